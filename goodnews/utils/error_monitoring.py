import json
import logging
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import pytz

from goodnews.utils.errors import (
    CapacityExceeded,
    ClassifierError,
    ConfigError,
    GoodNewsError,
    ProviderError,
    QuotaExhausted,
    RateLimitError,
    StoreError,
)


MAX_STACK_CHARS = 1000


@dataclass
class ErrorContext:
    """Context for an error occurrence"""
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    service: str
    operation: str
    severity: str
    code: str = "internal"
    recovery_action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_document(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["stack_trace"] = self.stack_trace[:MAX_STACK_CHARS]
        return data


class ErrorSeverity(Enum):
    """Error severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ServiceType(Enum):
    """Service classifications"""
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"


class ErrorHandler:
    """
    Records failures with a severity and a recovery hint.

    Providers and the classifier have fallbacks, so their failures are at
    most HIGH. Store and configuration failures end a run and are CRITICAL.
    """

    def __init__(self, history_size: int = 100) -> None:
        self.service_criticality: Dict[str, ServiceType] = {
            'store': ServiceType.CRITICAL,
            'scheduler': ServiceType.CRITICAL,
            'classifier': ServiceType.IMPORTANT,
            'gemini': ServiceType.IMPORTANT,
            'cache': ServiceType.OPTIONAL,
            'newsdata': ServiceType.IMPORTANT,
            'gnews': ServiceType.OPTIONAL,
        }

        self.error_history: Deque[ErrorContext] = deque(maxlen=history_size)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.service_counts: Dict[str, int] = defaultdict(int)

        self.recovery_strategies: Dict[type, Callable[[Exception], str]] = {
            RateLimitError: lambda e: f"Back off for {getattr(e, 'retry_after', 60)}s before calling {getattr(e, 'service', 'the service')} again.",
            QuotaExhausted: lambda e: "Provider credits are exhausted; wait for the daily reset or raise the plan quota.",
            ConfigError: lambda e: "Set the missing API keys / settings and restart.",
            CapacityExceeded: lambda e: "Split the batch into smaller chunks before storing.",
            StoreError: lambda e: "Check the database file permissions and free disk space.",
        }

        self.logger = logging.getLogger(__name__)

    def handle_error(
        self,
        error: BaseException,
        service: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        error_message = str(error)
        stack_trace = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        timestamp = datetime.now(pytz.UTC)

        severity = self.classify_severity(error, service)

        error_context = ErrorContext(
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=timestamp,
            service=service,
            operation=operation,
            severity=severity.value,
            code=error.code if isinstance(error, GoodNewsError) else "internal",
            recovery_action=self.get_recovery_suggestion(error),
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1
        self.service_counts[service] += 1

        self.logger.error(json.dumps({
            'event': 'error',
            'service': service,
            'operation': operation,
            'severity': severity.value,
            'error_type': error_type,
            'error_message': error_message,
            'timestamp': timestamp.isoformat(),
        }))

        return error_context

    def classify_severity(self, error: BaseException, service: str) -> ErrorSeverity:
        service_type = self.service_criticality.get(service, ServiceType.OPTIONAL)

        if isinstance(error, (ConfigError, StoreError, CapacityExceeded)):
            return ErrorSeverity.CRITICAL
        if isinstance(error, (RateLimitError, QuotaExhausted)):
            return ErrorSeverity.HIGH if service_type != ServiceType.OPTIONAL else ErrorSeverity.MEDIUM
        if isinstance(error, ClassifierError) and error.kind == "auth":
            return ErrorSeverity.HIGH
        if isinstance(error, (ProviderError, ClassifierError)):
            return ErrorSeverity.MEDIUM if service_type != ServiceType.OPTIONAL else ErrorSeverity.LOW

        if service_type == ServiceType.CRITICAL:
            return ErrorSeverity.CRITICAL
        if service_type == ServiceType.IMPORTANT:
            return ErrorSeverity.MEDIUM
        return ErrorSeverity.LOW

    def get_recovery_suggestion(self, error: BaseException) -> Optional[str]:
        for error_type, strategy in self.recovery_strategies.items():
            if isinstance(error, error_type):
                return strategy(error)
        if isinstance(error, ClassifierError):
            return f"Classifier failed ({error.kind}); keyword fallback was used."
        return None

    def get_summary(self) -> Dict[str, Any]:
        return {
            'total_errors': sum(self.error_counts.values()),
            'by_type': dict(self.error_counts),
            'by_service': dict(self.service_counts),
        }


class CircuitBreaker:
    """Circuit breaker for service protection."""

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.failure_counts: Dict[str, int] = defaultdict(int)
        self.circuit_states: Dict[str, Tuple[str, datetime]] = {}
        self.logger = logging.getLogger(__name__)

    def record_success(self, service: str) -> None:
        self.failure_counts[service] = 0
        self.circuit_states[service] = ('closed', self.clock())

    def record_failure(self, service: str) -> None:
        self.failure_counts[service] += 1
        if self.failure_counts[service] >= self.failure_threshold:
            if not self.is_open(service):
                self.logger.warning(f"Circuit opened for {service} after {self.failure_counts[service]} failures")
            self.circuit_states[service] = ('open', self.clock())

    def is_open(self, service: str) -> bool:
        state = self.circuit_states.get(service)
        if not state:
            return False
        status, ts = state
        if status != 'open':
            return False
        if self.clock() - ts >= self.recovery_timeout:
            # Half-open: let the next call through
            self.circuit_states[service] = ('closed', self.clock())
            self.failure_counts[service] = 0
            return False
        return True

    def should_attempt(self, service: str) -> bool:
        return not self.is_open(service)

    def states(self) -> Dict[str, str]:
        return {service: ('open' if self.is_open(service) else 'closed') for service in list(self.circuit_states)}
