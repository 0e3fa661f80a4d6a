"""
Durable request/response log in the relational store.

record() is the best-effort path used after every primary operation:
it never raises. write() is the raising variant for callers whose
primary operation *is* the log insert (build log ingestion).
"""

from typing import Any, Dict, List, Optional
import json
import logging
import uuid

from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session, select

from llm_gateway.diagnostics import Diagnostics
from llm_gateway.inference import get_time_millis
from llm_gateway.models import LogRecord

logger = logging.getLogger(__name__)


def _summarize(summary: Any) -> str:
    if isinstance(summary, str):
        return summary
    return json.dumps(summary, default=str)


class DurableLogger:
    def __init__(self, engine, diagnostics: Diagnostics):
        self.engine = engine
        self.diagnostics = diagnostics

    def _insert(self, record: LogRecord) -> str:
        record_id = record.id
        with Session(self.engine) as session:
            session.add(record)
            session.commit()
        return record_id

    async def write(self, kind: str, request_summary: Any, response_summary: Any) -> str:
        record = LogRecord(
            id=uuid.uuid4().hex,
            kind=kind,
            timestamp=get_time_millis(),
            request_summary=_summarize(request_summary),
            response_summary=_summarize(response_summary),
        )
        return await run_in_threadpool(self._insert, record)

    async def record(self, kind: str, request_summary: Any, response_summary: Any) -> Optional[str]:
        try:
            return await self.write(kind, request_summary, response_summary)
        except Exception as exc:
            self.diagnostics.report(f"journal.{kind}", exc)
            return None


def list_log_records(engine, limit: int = 50, kind: Optional[str] = None) -> List[Dict[str, Any]]:
    """Most recent records first, by insertion order."""
    with Session(engine) as session:
        statement = select(LogRecord)
        if kind:
            statement = statement.where(LogRecord.kind == kind)
        records = session.exec(statement.order_by(LogRecord.seq.desc()).limit(limit)).all()
        return [record.model_dump() for record in records]
