# peercall/candidates.py
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CandidateRecord:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self):
        # Same field names the signaling server relays in rtcMessage
        return {"candidate": self.candidate, "id": self.sdp_mid, "label": self.sdp_mline_index}

    @classmethod
    def from_dict(cls, data):
        if isinstance(data, str):
            return cls(candidate=data)
        return cls(
            candidate=data["candidate"],
            sdp_mid=data.get("id", data.get("sdpMid")),
            sdp_mline_index=data.get("label", data.get("sdpMLineIndex")),
        )


class IceCandidateQueue:
    """
    Holds candidates for one direction until the matching description is set.
    The caller transmits or applies whatever flush() hands back.
    """

    def __init__(self):
        self._items = []

    def enqueue(self, candidate):
        self._items.append(candidate)

    def flush(self):
        items, self._items = self._items, []
        return items

    def clear(self):
        self._items.clear()

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))
