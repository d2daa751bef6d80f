"""
In-memory progress board.

UI sink that keeps the latest rendered frame per target so the API can serve
progress polls. Nothing is persisted.
"""
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional


class BoardSink:
    """UiSink bound to one target id of a ProgressBoard."""

    def __init__(self, board: "ProgressBoard", target_id: Any):
        self.board = board
        self.target_id = target_id

    def render(
        self,
        stage_key: str,
        label: str,
        percentage: int,
        eta_seconds: Optional[int],
        error_panel: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.board.record(self.target_id, {
            "stage": stage_key,
            "label": label,
            "percentage": percentage,
            "etaSeconds": eta_seconds,
            "errorPanel": error_panel,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        })


class ProgressBoard:
    """Latest frame plus a short history per target id."""

    def __init__(self, history_size: int = 50):
        self.history_size = history_size
        self._frames: Dict[Any, Deque[Dict[str, Any]]] = {}

    def sink_for(self, target_id: Any) -> BoardSink:
        return BoardSink(self, target_id)

    def record(self, target_id: Any, frame: Dict[str, Any]) -> None:
        frames = self._frames.setdefault(target_id, deque(maxlen=self.history_size))
        frames.append(frame)

    def snapshot(self, target_id: Any) -> Optional[Dict[str, Any]]:
        frames = self._frames.get(target_id)
        return dict(frames[-1]) if frames else None

    def history(self, target_id: Any) -> List[Dict[str, Any]]:
        return [dict(frame) for frame in self._frames.get(target_id, ())]

    def forget(self, target_id: Any) -> None:
        self._frames.pop(target_id, None)
