from abc import ABC, abstractmethod
from collections.abc import Iterable


class ParticipantDirectory(ABC):
    """Identity checks for doctors and patients owned by the profile services."""

    @abstractmethod
    async def doctor_exists(self, doctor_id: int) -> bool: ...

    @abstractmethod
    async def patient_exists(self, patient_id: int) -> bool: ...


class InMemoryDirectory(ParticipantDirectory):
    """Known ids held in memory. ``None`` for a role accepts any positive id."""

    def __init__(
        self,
        doctor_ids: Iterable[int] | None = None,
        patient_ids: Iterable[int] | None = None,
    ) -> None:
        self._doctor_ids = set(doctor_ids) if doctor_ids is not None else None
        self._patient_ids = set(patient_ids) if patient_ids is not None else None

    async def doctor_exists(self, doctor_id: int) -> bool:
        return _known(self._doctor_ids, doctor_id)

    async def patient_exists(self, patient_id: int) -> bool:
        return _known(self._patient_ids, patient_id)


def _known(ids: set[int] | None, candidate: int) -> bool:
    if candidate <= 0:
        return False
    return ids is None or candidate in ids
