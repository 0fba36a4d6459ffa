"""Base watchdog class for session services driven by host events."""

import logging
from typing import Any, ClassVar

from bubus import BaseEvent, EventBus
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class BaseWatchdog(BaseModel):
    """Base class for all session watchdogs.

    Watchdogs subscribe to host events on the session bus and keep derived
    state (navigation, readiness, downloads) in sync. Each one is constructed
    explicitly by the owning session, so tests can build isolated instances.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        validate_assignment=False,
        revalidate_instances='never',
    )

    # Class variables to statically define the list of events relevant to each watchdog
    LISTENS_TO: ClassVar[list[type[BaseEvent[Any]]]] = []
    EMITS: ClassVar[list[type[BaseEvent[Any]]]] = []

    # Core dependencies
    event_bus: EventBus = Field()

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f'{type(self).__module__}.{type(self).__name__}')

    def attach_to_session(self) -> None:
        """Attach event handlers to the event bus.

        The default registers ``on_<EventName>`` for every class in ``LISTENS_TO``.
        """
        for event_class in self.LISTENS_TO:
            handler = getattr(self, f'on_{event_class.__name__}', None)
            if handler is None:
                raise ValueError(f'{type(self).__name__} listens to {event_class.__name__} but has no handler for it')
            self.event_bus.on(event_class, handler)
