"""
Activation log utility.
Appends one JSON record per evaluated turn so knowledge decisions can be
inspected after the fact.
"""
import json
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from lore_engine.config.models import SystemConfig

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_-]+")


class ActivationLog:
    """Writes per-conversation JSONL activation records."""

    def __init__(self, log_dir: Path = None, enabled: bool = True):
        """Initialize activation log.

        Args:
            log_dir: Directory for activation logs. Defaults to data/activation_logs/
            enabled: Whether records are written (from system config)
        """
        if log_dir is None:
            log_dir = Path("data/activation_logs")

        self.log_dir = Path(log_dir)
        self.enabled = enabled

        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Activation log initialized: {self.log_dir}")

    @classmethod
    def from_config(cls, config: SystemConfig) -> "ActivationLog":
        """Activation log at ``paths.activation_logs``, on when the config enables it."""
        return cls(config.paths.activation_logs, enabled=config.activation.activation_log_enabled)

    def _log_file(self, conversation_id: str) -> Path:
        # Ids become file names inside log_dir, never paths
        safe_id = _UNSAFE_FILENAME.sub("_", str(conversation_id)) or "conversation"
        return self.log_dir / f"{safe_id}.jsonl"

    def record_turn(self, conversation_id: str, record: Dict[str, Any]) -> None:
        """Append one turn record.

        Write failures are logged and never reach the caller.

        Args:
            conversation_id: Conversation the turn belongs to
            record: JSON-serializable turn summary
        """
        if not self.enabled:
            return

        try:
            line = {"timestamp": datetime.now().isoformat(), "conversation_id": conversation_id}
            line.update(record)
            with open(self._log_file(conversation_id), "a", encoding="utf-8") as f:
                f.write(json.dumps(line, ensure_ascii=False, default=str) + "\n")
        except Exception as e:
            logger.error(f"Failed to write activation log: {e}", exc_info=True)

    def read_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Read all turn records for a conversation."""
        log_file = self._log_file(conversation_id)
        if not log_file.exists():
            return []

        records = []
        with open(log_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    records.append(json.loads(line))
        return records

    def clear_conversation(self, conversation_id: str) -> None:
        """Delete the log for a conversation."""
        log_file = self._log_file(conversation_id)
        if log_file.exists():
            log_file.unlink()
            logger.info(f"Cleared activation log for conversation {conversation_id}")

    def clear_all(self) -> None:
        """Delete every activation log."""
        if self.log_dir.exists():
            shutil.rmtree(self.log_dir)
            self.log_dir.mkdir(parents=True, exist_ok=True)
