"""Core utilities: settings, protocol config, errors, logging, events, locks and timers."""

from .config import CoreSettings, clear_settings_cache, get_settings
from .exceptions import (
    AlreadyExistsError,
    ConfigException,
    ConfigMissingError,
    EvidenceValidationError,
    InvalidTransitionError,
    LedgerError,
    NotFoundError,
    TransactionBlockedError,
    TransactionHaltedError,
    TwoCheckException,
    UnauthorizedError,
    ValidationException,
)
from .interfaces import (
    InMemoryLedgerClient,
    LedgerClient,
    LedgerResult,
    LoggingNotificationSender,
    Notification,
    NotificationSender,
    RecordingNotificationSender,
)
from .locks import KeyedLock
from .outbox import Event, Outbox
from .protocol_config import (
    ProtocolConfig,
    clear_protocol_config_cache,
    get_protocol_config,
    load_protocol_config,
)

__all__ = [
    # Settings
    "CoreSettings",
    "get_settings",
    "clear_settings_cache",
    "ProtocolConfig",
    "load_protocol_config",
    "get_protocol_config",
    "clear_protocol_config_cache",
    # Exceptions
    "TwoCheckException",
    "NotFoundError",
    "AlreadyExistsError",
    "InvalidTransitionError",
    "UnauthorizedError",
    "ConfigException",
    "ConfigMissingError",
    "EvidenceValidationError",
    "TransactionBlockedError",
    "TransactionHaltedError",
    "LedgerError",
    "ValidationException",
    # Collaborators
    "LedgerClient",
    "LedgerResult",
    "InMemoryLedgerClient",
    "Notification",
    "NotificationSender",
    "LoggingNotificationSender",
    "RecordingNotificationSender",
    # Plumbing
    "Event",
    "Outbox",
    "KeyedLock",
]
