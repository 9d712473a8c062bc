"""
Handoff ticket storage.

Tickets live in the same SessionStore as browser sessions, under their own
key prefix, and are redeemed with an atomic pop so a code can never be
honored twice.
"""

import logging
import time
from typing import Callable, Optional

from ..exceptions import StateError
from ..models import HandoffTicket
from ..sessions import SessionStore

logger = logging.getLogger(__name__)

TICKET_KEY_PREFIX = "handoff:"


class HandoffTicketStore:
    def __init__(
        self,
        store: SessionStore,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def expiry(self) -> float:
        return self._clock() + self._ttl_seconds

    async def put(self, ticket: HandoffTicket) -> None:
        await self._store.set(
            TICKET_KEY_PREFIX + ticket.code,
            ticket.model_dump(by_alias=True),
            self._ttl_seconds,
        )

    async def discard(self, code: str) -> None:
        await self._store.delete(TICKET_KEY_PREFIX + code)

    async def redeem(self, code: str, product_id: str) -> HandoffTicket:
        """
        Consume a ticket.

        The ticket is removed before any check, so a failed redemption also
        burns the code.

        Raises:
            StateError: If the code is unknown, already used, expired or
                        issued for another product
        """
        data = await self._store.pop(TICKET_KEY_PREFIX + code)
        if data is None:
            raise StateError("Handoff code is unknown, expired or already used")

        ticket = HandoffTicket.model_validate(data)

        if ticket.product_id != product_id:
            logger.warning(
                "Handoff code presented by the wrong product",
                extra={"product_id": product_id},
            )
            raise StateError("Handoff code was not issued for this product")

        if self._clock() >= ticket.expires_at:
            raise StateError("Handoff code has expired")

        return ticket

    async def peek(self, code: str) -> Optional[HandoffTicket]:
        data = await self._store.get(TICKET_KEY_PREFIX + code)
        return HandoffTicket.model_validate(data) if data else None
