import structlog
import logging
import sys
from collections import deque
from typing import Deque, Dict, Any, Optional
from datetime import datetime
from enum import Enum
import os

from pydantic import BaseModel, Field


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "branchat-context",
    environment: Optional[str] = None
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment or os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request-scoped identifiers to all log entries"""

    context = structlog.contextvars.get_contextvars()

    # Add conversation ID if bound for this request
    conversation_id = context.get("conversation_id")
    if conversation_id and "conversation_id" not in event_dict:
        event_dict["conversation_id"] = conversation_id

    # Add streaming client ID if available
    client_id = context.get("client_id")
    if client_id and "client_id" not in event_dict:
        event_dict["client_id"] = client_id

    return event_dict


logger = structlog.get_logger(__name__)


class UsageOperation(str, Enum):
    """Kinds of generation-provider calls tracked for usage"""
    CHAT = "chat"
    SUMMARIZE = "summarize"
    EMBEDDING = "embedding"


class TokenUsage(BaseModel):
    """One provider call's estimated token usage"""
    operation: UsageOperation
    model: str
    total_tokens: int
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class UsageTracker:
    """Bounded in-memory log of token usage"""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._entries: Deque[TokenUsage] = deque(maxlen=max_entries)

    def record(
        self,
        operation: UsageOperation,
        model: str,
        total_tokens: int,
        user_id: Optional[str] = None
    ) -> TokenUsage:
        """Record one call; the oldest entry is evicted once the log is full"""

        usage = TokenUsage(
            operation=operation,
            model=model,
            total_tokens=total_tokens,
            user_id=user_id
        )
        self._entries.append(usage)

        # Log for external monitoring
        logger.info(
            "token_usage",
            operation=operation.value,
            model=model,
            total_tokens=total_tokens,
            user_id=user_id
        )

        return usage

    def __len__(self) -> int:
        return len(self._entries)

    def usage_between(self, start: datetime, end: datetime) -> Dict[str, int]:
        """Token totals per operation for a time window"""

        totals = {op.value: 0 for op in UsageOperation}
        for usage in self._entries:
            if start <= usage.timestamp <= end:
                totals[usage.operation.value] += usage.total_tokens

        totals["total"] = sum(totals[op.value] for op in UsageOperation)
        return totals

    def current_stats(self) -> Dict[str, Any]:
        """Summary of everything still retained in the log"""

        if not self._entries:
            return {
                "total_entries": 0,
                "total_tokens": 0,
                "by_operation": {op.value: 0 for op in UsageOperation}
            }

        by_operation = {op.value: 0 for op in UsageOperation}
        for usage in self._entries:
            by_operation[usage.operation.value] += usage.total_tokens

        timestamps = [usage.timestamp for usage in self._entries]

        return {
            "total_entries": len(self._entries),
            "total_tokens": sum(by_operation.values()),
            "by_operation": by_operation,
            "oldest_entry": min(timestamps),
            "newest_entry": max(timestamps)
        }
