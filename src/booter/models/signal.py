"""Control signals carried over the SignalBus."""

from enum import Enum
from pydantic import BaseModel, Field


class SignalKind(str, Enum):
    RETURN = "return"
    STATUS = "status"
    UNKNOWN = "unknown"


class ControlSignal(BaseModel):
    """One command read from the control channel.

    Wire format is a single text line: ``return`` or ``status``, optionally
    followed by a space and the producer name (``return serial``).
    """

    kind: SignalKind = Field(..., description="Requested action")
    source: str = Field("channel", description="Producer (detector name, api, cli...)")
    raw: str = Field("", description="Payload as received")

    @classmethod
    def parse(cls, payload: str, source: str = "channel") -> "ControlSignal":
        raw = payload.strip()
        word, _, rest = raw.partition(" ")
        try:
            kind = SignalKind(word.lower())
        except ValueError:
            kind = SignalKind.UNKNOWN
        if kind == SignalKind.UNKNOWN:
            return cls(kind=kind, source=source, raw=raw)
        return cls(kind=kind, source=rest.strip() or source, raw=raw)

    def to_payload(self) -> str:
        return f"{self.kind.value} {self.source}\n"
