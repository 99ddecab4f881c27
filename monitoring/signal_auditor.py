import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union


logger = logging.getLogger(__name__)


class SignalAuditor:
    """Append-only JSONL trail of entry decisions and signal/movement transitions."""

    def __init__(self, log_path: Optional[Union[str, Path]] = None, enabled: bool = True):
        self.log_path = Path(log_path or 'logs/decision_audit.jsonl')
        self.enabled = enabled

    def record_decision(
        self,
        user_id: str,
        symbol: str,
        outcome: str,
        conditions: Dict[str, bool],
        indicators: Dict[str, Any],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._write_entry({
            'timestamp': time.time(),
            'event': 'entry_decision',
            'user_id': user_id,
            'symbol': symbol,
            'outcome': outcome,
            'conditions': conditions,
            'passed': sum(1 for ok in conditions.values() if ok),
            'indicators': indicators,
            'details': details or {},
        })

    def record_transition(
        self,
        entity: str,
        entity_id: str,
        signal_id: str,
        from_status: Optional[str],
        to_status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._write_entry({
            'timestamp': time.time(),
            'event': f'{entity}_transition',
            'entity_id': entity_id,
            'signal_id': signal_id,
            'from': from_status,
            'to': to_status,
            'details': details or {},
        })

    def _write_entry(self, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist audit log: %s", exc)
