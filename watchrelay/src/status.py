from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Status(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MISCONFIGURED = "misconfigured"
    ERROR = "error"
    SENDING = "sending"
    RECEIVING = "receiving"
    TRANSFER = "transfer"
    BLANK = "blank"


@dataclass(frozen=True)
class StatusValue:
    """Displayable status of a watch relay.

    ``shape`` is ``ring`` or ``dot`` and ``fill`` one of ``red``, ``green``,
    ``yellow``, ``blue`` or ``grey``.  The blank status carries neither.
    """

    shape: str | None
    fill: str | None
    text: str

    def as_dict(self) -> dict[str, str]:
        result: dict[str, str] = {}
        if self.shape is not None:
            result["shape"] = self.shape
        if self.fill is not None:
            result["fill"] = self.fill
        if self.text:
            result["text"] = self.text
        return result


_TEMPLATES: dict[Status, tuple[str | None, str | None, str]] = {
    Status.CONNECTING: ("ring", "yellow", "connecting"),
    Status.CONNECTED: ("dot", "green", "connected"),
    Status.DISCONNECTED: ("ring", "red", "disconnected"),
    Status.MISCONFIGURED: ("ring", "red", "misconfigured"),
    Status.ERROR: ("dot", "red", "error"),
    Status.SENDING: ("dot", "blue", "sending"),
    Status.RECEIVING: ("dot", "blue", "receiving"),
    Status.TRANSFER: ("dot", "blue", "transfer"),
    Status.BLANK: (None, None, ""),
}


def render(state: Status | str, extra_text: str | None = None) -> StatusValue:
    """Build a fresh :class:`StatusValue` for *state*.

    Diagnostic text is appended as ``"<base>: <extra_text>"``.
    """
    shape, fill, text = _TEMPLATES[Status(state)]
    if extra_text:
        text = f"{text}: {extra_text}" if text else extra_text
    return StatusValue(shape=shape, fill=fill, text=text)
