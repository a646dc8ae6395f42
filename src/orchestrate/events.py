# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""JSONL event log for run lifecycle reporting.

Event types: run.started, phase.started, step.completed, phase.completed,
run.completed. Each line carries a per-client sequence number so readers can
order events written from several worker threads.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


class EventClient:
    """Append-only JSONL event writer, safe to call from worker threads."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path).expanduser()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seq = 0

    def log_event(
        self,
        event_type: str,
        run_id: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Append one event line."""
        with self._lock:
            self._seq += 1
            event = {
                "seq": self._seq,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_type": event_type,
                "run_id": run_id,
                "status": status,
            }
            if payload:
                event["payload"] = payload
            if error_message:
                event["error_message"] = error_message

            with open(self.log_path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")
