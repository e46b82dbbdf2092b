import logging
import time
from typing import Dict, Any, Optional
from enum import Enum
from dataclasses import dataclass, asdict


class EventType(Enum):
    """Standard event types for structured logging"""
    STATUS_POLL = "status_poll"
    PROTOCOL_CONTROL = "protocol_control"
    STATE_TRANSITION = "state_transition"
    RECONCILE_CYCLE = "reconcile_cycle"
    DAEMON_LIFECYCLE = "daemon_lifecycle"


class ActionResult(Enum):
    """Standard action results"""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"


@dataclass
class StructuredEvent:
    """Base structure for all structured log events"""
    event_type: str
    timestamp: float
    result: str
    component: str
    operation: str
    details: Dict[str, Any]
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None


class StructuredEventLogger:
    """Handles structured logging for daemon events"""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)
        self.correlation_id = None

    def set_correlation_id(self, correlation_id: Optional[str]):
        """Set correlation ID for tracking related events across a reconciliation tick"""
        self.correlation_id = correlation_id

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        if isinstance(event, StructuredEvent):
            if self.correlation_id:
                event.correlation_id = self.correlation_id
            log_data = {
                "structured_event": True,
                **asdict(event)
            }
        elif isinstance(event, dict):
            log_data = {
                "structured_event": True,
                **event
            }
            if self.correlation_id:
                log_data["correlation_id"] = self.correlation_id
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        result = log_data.get("result")
        level = logging.INFO
        if result == ActionResult.FAILURE.value:
            level = logging.ERROR
        elif result == ActionResult.NO_CHANGE.value:
            level = logging.DEBUG

        message = f"{log_data.get('component', 'unknown')}.{log_data.get('operation', 'unknown')}: {result}"
        if log_data.get("error_message"):
            message += f" - {log_data['error_message']}"

        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_status_poll(self,
                        command: str,
                        primary_router: Optional[bool],
                        result: ActionResult,
                        failure_kind: str = None,
                        duration_ms: int = None,
                        error_message: str = None) -> None:
        """Log the outcome of one status source poll"""

        event = StructuredEvent(
            event_type=EventType.STATUS_POLL.value,
            timestamp=time.time(),
            result=result.value,
            component="status_oracle",
            operation="poll",
            details={
                "command": command,
                "primary_router": primary_router,
                "failure_kind": failure_kind
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_protocol_control(self,
                             socket_path: str,
                             protocol: str,
                             verb: str,  # "enable" or "disable"
                             result: ActionResult,
                             reply_code: int = None,
                             duration_ms: int = None,
                             error_message: str = None) -> None:
        """Log an enable/disable call against the routing daemon"""

        event = StructuredEvent(
            event_type=EventType.PROTOCOL_CONTROL.value,
            timestamp=time.time(),
            result=result.value,
            component="bird",
            operation=f"{verb}_protocol",
            details={
                "socket_path": socket_path,
                "protocol": protocol,
                "verb": verb,
                "reply_code": reply_code
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_state_transition(self,
                             old_state: str,
                             new_state: str,
                             primary_router: bool,
                             protocol: str) -> None:
        """Log a change of the remembered protocol state"""

        event = StructuredEvent(
            event_type=EventType.STATE_TRANSITION.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="state_machine",
            operation="state_transition",
            details={
                "old_state": old_state,
                "new_state": new_state,
                "primary_router": primary_router,
                "protocol": protocol
            }
        )

        self.log_event(event)
