#!/usr/bin/env python3
"""
Notification sinks - surface success and failure events to the user.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

from input_validation import sanitize_log_message

ANSI_BOLD = "\033[1m"
ANSI_RED = "\033[31m"
ANSI_GREEN = "\033[32m"
ANSI_CYAN = "\033[36m"
ANSI_YELLOW = "\033[33m"
ANSI_RESET = "\033[0m"


@dataclass
class Notification:
    level: str  # 'success', 'error', 'info'
    message: str


class Notifier(ABC):
    @abstractmethod
    def notify(self, level: str, message: str) -> None:
        pass

    def success(self, message: str) -> None:
        self.notify("success", message)

    def error(self, message: str) -> None:
        self.notify("error", message)

    def info(self, message: str) -> None:
        self.notify("info", message)


class ConsoleNotifier(Notifier):
    """Prints colored one-line notices and mirrors them to the log."""

    COLORS = {"success": ANSI_GREEN, "error": ANSI_RED, "info": ANSI_CYAN}
    ICONS = {"success": "✅", "error": "❌", "info": "ℹ️ "}

    def notify(self, level: str, message: str) -> None:
        if level == "error":
            logging.warning(sanitize_log_message(message))
        else:
            logging.debug(sanitize_log_message(message))
        color = self.COLORS.get(level, "")
        icon = self.ICONS.get(level, "")
        print(f"{color}{icon} {message}{ANSI_RESET}")


class MemoryNotifier(Notifier):
    """Keeps notifications in a list, for embedding and tests."""

    def __init__(self):
        self.notifications: List[Notification] = []

    def notify(self, level: str, message: str) -> None:
        self.notifications.append(Notification(level, message))

    @property
    def errors(self) -> List[str]:
        return [n.message for n in self.notifications if n.level == "error"]

    @property
    def successes(self) -> List[str]:
        return [n.message for n in self.notifications if n.level == "success"]

    def clear(self) -> None:
        self.notifications = []
