"""Caller-facing events and the in-memory verification event log."""

import logging
import threading
from collections import deque
from datetime import datetime

# Terminal / notable events a caller can subscribe to
STATUS = "status"
PHASE_CHANGED = "phase_changed"
IDENTIFIER_ACQUIRED = "identifier_acquired"
IDENTIFIER_UNKNOWN = "identifier_unknown"
SCAN_TIMEOUT = "scan_timeout"
INITIALIZATION_FAILED = "initialization_failed"
FACE_VERIFIED = "face_verified"
FACE_VERIFICATION_FAILED = "face_verification_failed"
MULTI_FACE_REJECTED = "multi_face_rejected"

EVENT_TYPES = (
    STATUS,
    PHASE_CHANGED,
    IDENTIFIER_ACQUIRED,
    IDENTIFIER_UNKNOWN,
    SCAN_TIMEOUT,
    INITIALIZATION_FAILED,
    FACE_VERIFIED,
    FACE_VERIFICATION_FAILED,
    MULTI_FACE_REJECTED,
)

verification_logger = logging.getLogger('idverify.security')

# Recent events, newest last
verification_monitor = {
    'events': deque(maxlen=200),
}


def log_verification_event(event_type, details, severity='INFO'):
    """Log a verification event with structured data."""
    event_data = {
        'timestamp': datetime.now().isoformat(),
        'event_type': event_type,
        'details': details,
        'severity': severity
    }

    verification_monitor['events'].append(event_data)

    if severity == 'WARNING':
        verification_logger.warning(f"{event_type}: {details}")
    elif severity == 'ERROR':
        verification_logger.error(f"{event_type}: {details}")
    elif severity == 'CRITICAL':
        verification_logger.critical(f"{event_type}: {details}")
    else:
        verification_logger.info(f"{event_type}: {details}")

    return event_data


def recent_events(event_type=None):
    """Return logged events, optionally filtered by type."""
    events = list(verification_monitor['events'])
    if event_type is None:
        return events
    return [event for event in events if event['event_type'] == event_type]


class EventBus:
    """Minimal publish/subscribe hub used by the flow controller."""

    def __init__(self):
        self._subscribers = {event_type: [] for event_type in EVENT_TYPES}
        self._lock = threading.Lock()

    def subscribe(self, event_type, callback):
        """Register callback(payload) for event_type. Returns an unsubscribe function."""
        if event_type not in self._subscribers:
            raise ValueError(f"Unknown event type: {event_type}")
        with self._lock:
            self._subscribers[event_type].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers[event_type]:
                    self._subscribers[event_type].remove(callback)

        return unsubscribe

    def emit(self, event_type, payload=None):
        with self._lock:
            callbacks = list(self._subscribers[event_type])
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                verification_logger.exception(f"Subscriber for {event_type} raised")
