"""Conversation resolution: one canonical conversation per pair of parties.

Creation is a check-then-act sequence, guarded twice:
    - in-process, a keyed lock on the sorted pair serializes concurrent
      resolutions of the same pair;
    - across processes, the UNIQUE pair_key column rejects the second insert.
      The loser re-reads the winner's row and returns it as if it had found
      it in the first place.
"""
import asyncio
import logging
from typing import Optional, Set, Tuple

from .errors import InvalidRequest, NotFound
from .locks import KeyedLock
from .schemas import ContextRefs
from .store import ChatStore, DuplicateConversation, pair_key

logger = logging.getLogger(__name__)

# Base delay between re-reads while a concurrent creator commits
RETRY_DELAY_SECONDS = 0.02


class ConversationResolver:
    """Finds or creates the conversation between two parties."""

    def __init__(self, store: ChatStore, retry_attempts: int = 3) -> None:
        self._store = store
        self._retry_attempts = retry_attempts
        self._pair_locks = KeyedLock()

    async def find_or_create(
        self,
        self_id: str,
        other_id: str,
        refs: Optional[ContextRefs] = None,
    ) -> str:
        """Return the id of the conversation between two parties.

        Args:
            self_id: The calling party.
            other_id: The other party.
            refs: Optional job/application references, used only when the
                conversation has to be created.

        Returns:
            The conversation id. Concurrent calls for the same unordered pair
            all return the same id.

        Raises:
            InvalidRequest: self_id equals other_id.
            NotFound: Unknown recipient or unresolvable context reference.
        """
        if self_id == other_id:
            raise InvalidRequest("Cannot create conversation with yourself")

        recipient = await asyncio.to_thread(self._store.get_user, other_id)
        if recipient is None:
            raise NotFound("Recipient not found")

        key = pair_key(self_id, other_id)
        async with self._pair_locks.hold(key):
            existing = await asyncio.to_thread(
                self._store.find_conversation_between, self_id, other_id
            )
            if existing:
                return existing

            client_id, worker_id = await self._resolve_context(refs)
            try:
                conversation = await asyncio.to_thread(
                    self._store.create_conversation,
                    self_id, other_id, refs, client_id, worker_id,
                )
            except DuplicateConversation:
                return await self._reread(self_id, other_id)

        logger.info(
            "[Resolver] Conversation %s ready for users %s and %s",
            conversation.conversationId, self_id, other_id,
        )
        return conversation.conversationId

    async def _resolve_context(
        self, refs: Optional[ContextRefs]
    ) -> Tuple[Optional[str], Optional[str]]:
        """Resolve job -> owning client and application -> applying worker."""
        client_id = worker_id = None
        if refs is None:
            return client_id, worker_id

        if refs.jobId:
            client_id = await asyncio.to_thread(self._store.get_job_client, refs.jobId)
            if not client_id:
                raise NotFound(f"Job {refs.jobId} not found")

        if refs.applicationId:
            worker_id = await asyncio.to_thread(
                self._store.get_application_worker, refs.applicationId
            )
            if not worker_id:
                raise NotFound(f"Application {refs.applicationId} not found")

        return client_id, worker_id

    async def _reread(self, self_id: str, other_id: str) -> str:
        """Fetch the row a concurrent creator committed.

        The row is only accepted if its participants are exactly this pair.
        """
        expected = {self_id, other_id}
        for attempt in range(self._retry_attempts):
            existing = await asyncio.to_thread(
                self._store.get_conversation_id_by_pair, self_id, other_id
            )
            if existing and await self._participants(existing) == expected:
                logger.info(
                    "[Resolver] Recovered from creation race, using %s", existing
                )
                return existing
            await asyncio.sleep(RETRY_DELAY_SECONDS * (attempt + 1))

        raise RuntimeError(
            f"Conversation for pair {pair_key(self_id, other_id)} "
            "not visible after uniqueness conflict"
        )

    async def _participants(self, conversation_id: str) -> Set[str]:
        return set(await asyncio.to_thread(self._store.get_participant_ids, conversation_id))
