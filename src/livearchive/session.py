"""
Live session record and the slot arena that recycles session objects.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List

from .errors import PoolError


@dataclass
class Session:
    """One broadcast instance, as seen in the live list and stored in the database."""
    session_id: str = ""
    owner_id: int = 0
    owner_name: str = ""
    stream_name: str = ""
    start_time: int = 0         # milliseconds since epoch
    title: str = ""
    duration_ms: int = 0
    playback_url: str = ""
    backup_url: str = ""
    aux_tag: int = 0            # live cut number, 0 when unknown

    # Arena slot index, -1 for objects that never came from a pool
    slot: int = field(default=-1, compare=False, repr=False)

    def reset(self) -> None:
        """Clear every field except the slot index."""
        self.session_id = ""
        self.owner_id = 0
        self.owner_name = ""
        self.stream_name = ""
        self.start_time = 0
        self.title = ""
        self.duration_ms = 0
        self.playback_url = ""
        self.backup_url = ""
        self.aux_tag = 0


# Sessions observed live at one poll instant, keyed by session id
Snapshot = Dict[str, Session]


class SlotState(Enum):
    """Ownership of an arena slot."""
    FREE = "free"
    LIVE = "live"               # held by the poller / reconciler
    FINALIZING = "finalizing"   # held by exactly one finalizer


class SessionPool:
    """
    Arena of reusable Session slots.

    A slot moves FREE -> LIVE on acquire, LIVE -> FINALIZING on hand_off and
    back to FREE on release. A released object is reset before reuse, so it
    must not be touched by its previous holder afterwards.
    """

    def __init__(self):
        self._slots: List[Session] = []
        self._states: List[SlotState] = []
        self._free: List[int] = []
        self._lock = threading.Lock()

    def acquire(self) -> Session:
        """Take a cleared session from the arena, growing it when no slot is free."""
        with self._lock:
            if self._free:
                index = self._free.pop()
                session = self._slots[index]
            else:
                index = len(self._slots)
                session = Session(slot=index)
                self._slots.append(session)
                self._states.append(SlotState.FREE)

            self._states[index] = SlotState.LIVE
            return session

    def hand_off(self, session: Session) -> None:
        """Transfer a live session to a finalizer."""
        with self._lock:
            self._check_owned(session, SlotState.LIVE)
            self._states[session.slot] = SlotState.FINALIZING

    def release(self, session: Session) -> None:
        """Return a session to the arena."""
        with self._lock:
            self._check_owned(session, SlotState.LIVE, SlotState.FINALIZING)
            session.reset()
            self._states[session.slot] = SlotState.FREE
            self._free.append(session.slot)

    def state_of(self, session: Session) -> SlotState:
        with self._lock:
            self._check_owned(session, *SlotState)
            return self._states[session.slot]

    def stats(self) -> Dict[str, int]:
        """Number of slots per state."""
        with self._lock:
            counts = {state.value: 0 for state in SlotState}
            for state in self._states:
                counts[state.value] += 1
            return counts

    def __len__(self) -> int:
        return len(self._slots)

    def _check_owned(self, session: Session, *allowed: SlotState) -> None:
        index = session.slot
        if index < 0 or index >= len(self._slots) or self._slots[index] is not session:
            raise PoolError(f"Session {session.session_id!r} does not belong to this pool")
        state = self._states[index]
        if state not in allowed:
            raise PoolError(
                f"Session slot {index} is {state.value}, expected "
                f"{' or '.join(s.value for s in allowed)}"
            )
