"""User-facing notifications for mutation outcomes."""

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class Notifier:
    """Interface for surfacing mutation outcomes to the user."""

    def success(self, message: str, description: str | None = None) -> None:
        """Report a committed mutation."""
        pass

    def error(self, message: str, description: str | None = None) -> None:
        """Report a failed mutation."""
        pass


class LoggingNotifier(Notifier):
    """Notifier that writes outcomes to the log."""

    def success(self, message: str, description: str | None = None) -> None:
        logger.info(message if description is None else f"{message} {description}")

    def error(self, message: str, description: str | None = None) -> None:
        logger.error(message if description is None else f"{message} {description}")


@dataclass
class Notification:
    level: str
    message: str
    description: str | None = None


@dataclass
class RecordingNotifier(Notifier):
    """Keeps notifications in memory for inspection."""

    notifications: list[Notification] = field(default_factory=list)

    def success(self, message: str, description: str | None = None) -> None:
        self.notifications.append(Notification("success", message, description))

    def error(self, message: str, description: str | None = None) -> None:
        self.notifications.append(Notification("error", message, description))

    @property
    def errors(self) -> list[Notification]:
        return [n for n in self.notifications if n.level == "error"]

    @property
    def successes(self) -> list[Notification]:
        return [n for n in self.notifications if n.level == "success"]
