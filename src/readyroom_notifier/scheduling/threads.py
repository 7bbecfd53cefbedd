"""
Thread routing for reminders.

Every event has at most one reminder thread, anchored on its first published
message. The thread state stored on each publication moves through::

    NONE --create ok / already exists--> CREATED
    NONE --create failed--------------> DISABLED
    DISABLED --existing thread found--> CREATED

CREATED is reused by every later reminder. DISABLED is sticky: creation is
never retried, only a lookup of an already existing thread, once per
dispatch. Every state write re-reads the event's publications first and
never replaces a CREATED state, so a thread recorded by a concurrent worker
always wins over ours.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from readyroom_notifier.core.errors import MessagingError, ThreadAlreadyExistsError
from readyroom_notifier.core.models import (
    DEFAULT_AUTO_ARCHIVE_MINUTES,
    VALID_AUTO_ARCHIVE_MINUTES,
    Destination,
    Event,
    OrgUnit,
    Publication,
    ThreadState,
)
from readyroom_notifier.messaging.base import MessagingClient

logger = logging.getLogger(__name__)


class PublicationStore(Protocol):
    async def get_event_publications(self, event_id: str) -> list[Publication]: ...

    async def update_event_publications(self, event_id: str, publications: Iterable[Publication]) -> None: ...


@dataclass
class ThreadRoute:
    """Where one reminder dispatch should be posted."""
    destination: Destination
    thread_id: Optional[str] = None

    @property
    def is_thread(self) -> bool:
        return self.thread_id is not None


def threading_policy(units: Iterable[OrgUnit]) -> tuple[bool, int]:
    """
    Decide whether reminders for these units go into a thread.

    Threads are used when any unit enables them. The auto-archive duration is
    the first valid one configured by such a unit, else one day.

    Returns:
        (use_threads, auto_archive_minutes)
    """
    use_threads = False
    auto_archive: Optional[int] = None
    for unit in units:
        threading = unit.settings.threading
        if not threading.use_threads:
            continue
        use_threads = True
        if auto_archive is None and threading.auto_archive_minutes in VALID_AUTO_ARCHIVE_MINUTES:
            auto_archive = threading.auto_archive_minutes
    return use_threads, auto_archive or DEFAULT_AUTO_ARCHIVE_MINUTES


class ThreadRouter:
    """
    Resolves the thread route of each destination for one reminder dispatch.

    Create one router per reminder; it remembers whether the DISABLED
    recovery lookup has already been tried during this dispatch.
    """

    def __init__(
        self,
        store: PublicationStore,
        messenger: MessagingClient,
        use_threads: bool = False,
        auto_archive_minutes: int = DEFAULT_AUTO_ARCHIVE_MINUTES,
    ):
        self.store = store
        self.messenger = messenger
        self.use_threads = use_threads
        self.auto_archive_minutes = auto_archive_minutes
        self._recovery_attempted = False

    async def route(self, event: Event, publication: Publication) -> ThreadRoute:
        """
        Resolve where the reminder for ``publication``'s destination goes.

        Reads the event's publications fresh, so a thread created by an
        earlier destination (or another worker) is picked up.
        """
        channel = ThreadRoute(destination=publication.destination)
        publications = await self.store.get_event_publications(event.id) or event.publications
        if not publications:
            return channel
        home = publications[0]

        existing = next((p.thread for p in publications if p.thread.is_created), None)
        if existing is not None:
            current = next((p for p in publications if p.destination.key == publication.destination.key), None)
            if current is not None and not current.thread.is_created:
                await self._persist(event.id, existing, only=publication.destination)
            return ThreadRoute(destination=home.destination, thread_id=existing.thread_id)

        # Any DISABLED destination triggers the lookup, at most once per router
        if any(p.thread.is_disabled for p in publications):
            return await self._recover(event, home) or channel

        if not self.use_threads:
            return channel

        return await self._create(event, home) or channel

    async def _create(self, event: Event, home: Publication) -> Optional[ThreadRoute]:
        try:
            thread_id = await self.messenger.create_thread(
                home.destination,
                home.message_id,
                event.name,
                self.auto_archive_minutes,
            )
            logger.info("Created reminder thread %s for event %s", thread_id, event.id)
        except ThreadAlreadyExistsError:
            thread_id = await self._lookup(event, home)
            if thread_id is None:
                logger.warning("Thread exists on event %s but could not be fetched, disabling threads", event.id)
        except MessagingError as e:
            logger.warning("Thread creation failed for event %s: %s, disabling threads", event.id, e)
            thread_id = None

        if thread_id is None:
            await self._persist(event.id, ThreadState.disabled())
            return None

        state = await self._persist(event.id, ThreadState.created(thread_id))
        return ThreadRoute(destination=home.destination, thread_id=state.thread_id)

    async def _recover(self, event: Event, home: Publication) -> Optional[ThreadRoute]:
        if self._recovery_attempted:
            return None
        self._recovery_attempted = True

        thread_id = await self._lookup(event, home)
        if thread_id is None:
            logger.debug("Threads stay disabled for event %s", event.id)
            return None

        logger.info("Recovered existing thread %s for event %s", thread_id, event.id)
        state = await self._persist(event.id, ThreadState.created(thread_id))
        return ThreadRoute(destination=home.destination, thread_id=state.thread_id)

    async def _lookup(self, event: Event, home: Publication) -> Optional[str]:
        try:
            return await self.messenger.get_existing_thread(home.destination, home.message_id, event.name)
        except MessagingError as e:
            logger.warning("Existing thread lookup failed for event %s: %s", event.id, e)
            return None

    async def _persist(
        self,
        event_id: str,
        state: ThreadState,
        only: Optional[Destination] = None,
    ) -> ThreadState:
        """
        Write ``state`` onto the event's publications and return the state in effect.

        If a fresh read shows a CREATED thread already, that thread wins and
        is returned instead.
        """
        publications = await self.store.get_event_publications(event_id)
        winner = next((p.thread for p in publications if p.thread.is_created), None)
        if winner is not None and state.is_created and winner.thread_id != state.thread_id:
            logger.info("Event %s already has thread %s, using it", event_id, winner.thread_id)
            state = winner
        elif winner is not None and not state.is_created:
            return winner

        changed = False
        updated: list[Publication] = []
        for pub in publications:
            target = only is None or pub.destination.key == only.key
            if target and not pub.thread.is_created and pub.thread != state:
                pub = pub.model_copy(update={"thread": state})
                changed = True
            updated.append(pub)

        if changed:
            await self.store.update_event_publications(event_id, updated)
        return state
