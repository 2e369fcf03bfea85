import asyncio
import time

import pytest
from sqlalchemy import update, select

from passkeyrp.core.database import Challenge, db_manager
from passkeyrp.core.exceptions import ChallengeNotFoundError, ChallengeAlreadyUsedError, ChallengeExpiredError


async def backdate(challenge, seconds):
    async with db_manager.get_db() as db:
        await db.execute(update(Challenge).where(Challenge.id == challenge.id).values(created_at=time.time() - seconds))
        await db.commit()


async def test_issue(service):
    challenge = await service.challenges.issue("registration", scope="alice", display_name="Alice")
    assert len(challenge.value) == 32
    assert challenge.kind == "registration"
    assert challenge.scope == "alice"
    assert challenge.consumed is False
    other = await service.challenges.issue("registration")
    assert other.value != challenge.value


async def test_issue_unknown_kind(service):
    with pytest.raises(ValueError):
        await service.challenges.issue("enrollment")


async def test_consume_once(service):
    challenge = await service.challenges.issue("authentication")
    consumed = await service.challenges.consume(challenge.value, "authentication")
    assert consumed.id == challenge.id
    assert consumed.consumed is True
    with pytest.raises(ChallengeAlreadyUsedError):
        await service.challenges.consume(challenge.value, "authentication")


async def test_consume_unknown(service):
    with pytest.raises(ChallengeNotFoundError):
        await service.challenges.consume(b"\x00" * 32, "authentication")


async def test_consume_wrong_kind_leaves_challenge_usable(service):
    challenge = await service.challenges.issue("registration")
    with pytest.raises(ChallengeNotFoundError):
        await service.challenges.consume(challenge.value, "authentication")
    assert (await service.challenges.consume(challenge.value, "registration")).id == challenge.id


async def test_expired_challenge_is_consumed_and_rejected(service):
    challenge = await service.challenges.issue("authentication")
    await backdate(challenge, 301)
    with pytest.raises(ChallengeExpiredError):
        await service.challenges.consume(challenge.value, "authentication")
    with pytest.raises(ChallengeAlreadyUsedError):
        await service.challenges.consume(challenge.value, "authentication")


async def test_challenge_just_inside_ttl(service):
    challenge = await service.challenges.issue("authentication")
    await backdate(challenge, 295)
    assert (await service.challenges.consume(challenge.value, "authentication")).id == challenge.id


async def test_concurrent_consumers_single_winner(service):
    challenge = await service.challenges.issue("authentication")
    results = await asyncio.gather(
        *[service.challenges.consume(challenge.value, "authentication") for _ in range(8)],
        return_exceptions=True,
    )
    winners = [result for result in results if isinstance(result, Challenge)]
    losers = [result for result in results if isinstance(result, ChallengeAlreadyUsedError)]
    assert len(winners) == 1
    assert len(losers) == 7


async def test_purge_expired(service):
    old = await service.challenges.issue("authentication")
    fresh = await service.challenges.issue("authentication")
    await backdate(old, 3600)
    assert await service.challenges.purge_expired() == 1
    async with db_manager.get_db() as db:
        remaining = (await db.execute(select(Challenge.id))).scalars().all()
    assert remaining == [fresh.id]
