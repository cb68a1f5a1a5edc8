"""
Run 指标汇总（由 RunRecord 离线重算，可复刻）。
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Union

from pydantic import ValidationError

from assistant_gateway.core.utils import parse_rfc3339
from assistant_gateway.state.run_ledger import RunRecord


def _new_summary() -> Dict[str, Any]:
    """返回一个空的 RunSummary（字段稳定）。"""

    return {
        "run_id": "",
        "session_key": "",
        "status": "unknown",
        "started_at": None,
        "ended_at": None,
        "wall_time_ms": 0,
        "failure_reason": None,
        "counts": {
            "events_total": 0,
            "phases_total": 0,
            "queued_total": 0,
            "notes_total": 0,
        },
        "phases": [],
        "events_by_type": {},
        "errors": [],
    }


def compute_run_summary(record: Union[RunRecord, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    从 RunRecord 计算 RunSummary。

    参数：
    - record：RunRecord 或其 JSON dict（例如从账本快照读出）

    返回：
    - dict：RunSummary（JSONable）；记录非法时 `errors` 含 `invalid_record`，status 为 unknown
    """

    summary = _new_summary()
    if not isinstance(record, RunRecord):
        try:
            record = RunRecord.model_validate(record)
        except ValidationError as exc:
            summary["errors"].append({"kind": "invalid_record", "message": str(exc)})
            return summary

    summary["run_id"] = record.run_id
    summary["session_key"] = record.session_key
    summary["status"] = record.status
    summary["started_at"] = record.started_at
    summary["ended_at"] = record.ended_at
    summary["failure_reason"] = record.failure_reason

    by_type: Dict[str, int] = summary["events_by_type"]
    for ev in record.events:
        by_type[ev.type] = by_type.get(ev.type, 0) + 1
        summary["counts"]["events_total"] += 1
        if ev.type == "phase" and ev.phase:
            summary["counts"]["phases_total"] += 1
            summary["phases"].append(ev.phase)
        elif ev.type == "queued":
            summary["counts"]["queued_total"] += 1
        elif ev.type == "note":
            summary["counts"]["notes_total"] += 1

    if record.failure_reason:
        kind, _, detail = record.failure_reason.partition(":")
        summary["errors"].append({"kind": kind or "unknown", "message": detail or record.failure_reason})

    if record.started_at and record.ended_at:
        started = parse_rfc3339(record.started_at)
        ended = parse_rfc3339(record.ended_at)
        if started is None or ended is None:
            summary["errors"].append({"kind": "invalid_record", "message": "failed to parse timestamps"})
        else:
            summary["wall_time_ms"] = max(0, int((ended - started).total_seconds() * 1000))
    return summary
