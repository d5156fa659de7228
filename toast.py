import datetime as _dt
from dataclasses import dataclass
from typing import Callable, Optional, Union

from utils import utc_now


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Armed:
    message: str
    entry_id: Optional[str]
    deadline: _dt.datetime

    @property
    def can_undo(self) -> bool:
        return self.entry_id is not None


ToastState = Union[Idle, Armed]


class UndoToast:
    """Transient confirmation with an optional undo action.

    ``tick`` is polled by whatever loop owns the toast. ``expire`` is for
    one-shot timers: it only clears the toast if the message still matches
    the one that scheduled the timer, so an old timer cannot hide a newer toast.
    """

    HOLD_SECONDS = 4.0

    def __init__(self, clock: Callable[[], _dt.datetime] = utc_now) -> None:
        self._clock = clock
        self.state: ToastState = Idle()

    def show(self, message: str, entry_id: Optional[str] = None) -> Armed:
        deadline = self._clock() + _dt.timedelta(seconds=self.HOLD_SECONDS)
        self.state = Armed(message=message, entry_id=entry_id, deadline=deadline)
        return self.state

    @property
    def message(self) -> Optional[str]:
        return self.state.message if isinstance(self.state, Armed) else None

    def tick(self, now: Optional[_dt.datetime] = None) -> ToastState:
        state = self.state
        if isinstance(state, Armed) and (now or self._clock()) >= state.deadline:
            self.state = Idle()
        return self.state

    def expire(self, message: str) -> bool:
        state = self.state
        if isinstance(state, Armed) and state.message == message:
            self.state = Idle()
            return True
        return False

    def invoke(self) -> Optional[str]:
        """Return the entry id to undo, if any, and dismiss the toast."""
        state = self.tick()
        self.state = Idle()
        if isinstance(state, Armed):
            return state.entry_id
        return None
