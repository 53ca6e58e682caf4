import logging
from typing import Callable, Iterable

from cycles import CycleKey


logger = logging.getLogger(__name__)

ChangeListener = Callable[[CycleKey, int], None]


class ChangeFeed:
    """Fan-out for "this household's cycle changed" notifications.

    Listeners re-fetch whatever they display; nothing here caches rollups.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_changed(self, cycle_key: CycleKey, household_id: int) -> None:
        for listener in list(self._listeners):
            try:
                listener(cycle_key, household_id)
            except Exception:
                logger.exception(
                    f"change_listener_failed: household={household_id} "
                    f"cycle={cycle_key}"
                )

    def publish_many(self, cycle_keys: Iterable[CycleKey], household_id: int) -> None:
        for key in sorted(set(cycle_keys)):
            self.on_changed(key, household_id)
