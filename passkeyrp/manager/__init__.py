from .asynchronous import PasskeyService
from .ceremonies import CeremonyState, CeremonyResult

__all__ = ["PasskeyService", "CeremonyState", "CeremonyResult"]
