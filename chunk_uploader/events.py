from collections.abc import Callable
from dataclasses import asdict, dataclass

from chunk_uploader.logs import AUDIT_LOGGER, get_event_logger, log_event


@dataclass(frozen=True)
class FileUploaded:
    """Emitted once per identifier after its chunks were merged."""

    disk: str
    file: str
    identifier: str
    filename: str
    size: int


class Notifier:
    def notify(self, event: FileUploaded) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def __init__(self, logger_name: str = AUDIT_LOGGER) -> None:
        self.logger = get_event_logger(logger_name)

    def notify(self, event: FileUploaded) -> None:
        log_event(self.logger, {"event": "file_uploaded", **asdict(event)})


class CallbackNotifier(Notifier):
    def __init__(self, callback: Callable[[FileUploaded], None]) -> None:
        self.callback = callback

    def notify(self, event: FileUploaded) -> None:
        self.callback(event)


class FanoutNotifier(Notifier):
    def __init__(self, *notifiers: Notifier) -> None:
        self.notifiers = list(notifiers)

    def notify(self, event: FileUploaded) -> None:
        for notifier in self.notifiers:
            notifier.notify(event)
