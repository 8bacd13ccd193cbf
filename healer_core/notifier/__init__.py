from .service import (
    STEP_TOPIC,
    TRANSITION_TOPIC,
    LoggingNotifier,
    NatsNotifier,
    Notifier,
)

__all__ = ["STEP_TOPIC", "TRANSITION_TOPIC", "LoggingNotifier", "NatsNotifier", "Notifier"]
