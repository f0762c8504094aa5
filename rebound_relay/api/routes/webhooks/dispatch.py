import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from rebound_relay.billing.billing_constants import Provider
from rebound_relay.billing.events import NormalizedPaymentEvent
from rebound_relay.billing.models import OrgModel
from rebound_relay.billing.services.org_resolver import resolve_organization

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    orm: Session
    event: NormalizedPaymentEvent
    org: Optional[OrgModel] = None
    # (callable, args) pairs run as background tasks once the transaction commits
    post_commit: list[tuple[Callable[..., Any], tuple]] = field(default_factory=list)
    _org_resolved: bool = False

    def get_org(self, refresh: bool = False) -> Optional[OrgModel]:
        """
        Resolve the event's tenant on first use.

        Handlers that never touch tenant state (refunds, disputes, marketplace
        invoices) never call this, so those events cannot create organizations.
        """
        if self._org_resolved and not refresh:
            return self.org

        customer = self.event.customer
        self.org = resolve_organization(
            self.orm,
            self.event.provider,
            customer.external_id,
            customer.email,
            customer.name,
            org_id_hint=self.event.org_id_hint,
        )
        self._org_resolved = True
        if self.org is None:
            logger.info(f"No organization for {self.event.provider.value} event {self.event.event_id}")
        return self.org

    def set_org(self, org: OrgModel) -> None:
        self.org = org
        self._org_resolved = True

    def after_commit(self, fn: Callable[..., Any], *args) -> None:
        self.post_commit.append((fn, args))


# a handler may return a short message that is echoed in the acknowledgment
HandlerResult = Optional[str]
HandlerFunc = Callable[[HandlerContext], Awaitable[HandlerResult]]


class WebhookDispatcher:
    """
    Explicit event type -> handler table for one provider.

    ```python
    dispatcher = WebhookDispatcher(Provider.stripe)

    @dispatcher.on("customer.subscription.deleted")
    async def handle_subscription_deleted(ctx: HandlerContext) -> HandlerResult:
        ...
    ```

    Event types with no registration are acknowledged and ignored.
    """

    def __init__(self, provider: Provider):
        self.provider = Provider(provider)
        self._handlers: dict[str, HandlerFunc] = {}

    def register(self, event_type: str, handler: HandlerFunc) -> None:
        if event_type in self._handlers:
            raise ValueError(f"{self.provider.value} handler for '{event_type}' already registered")
        self._handlers[event_type] = handler

    def on(self, *event_types: str) -> Callable[[HandlerFunc], HandlerFunc]:
        def decorator(handler: HandlerFunc) -> HandlerFunc:
            for event_type in event_types:
                self.register(event_type, handler)
            return handler

        return decorator

    def log_only(self, *event_types: str) -> None:
        """Register event types that are recorded but change no state (refunds, disputes)."""
        for event_type in event_types:
            self.register(event_type, log_event)

    def get(self, event_type: str) -> Optional[HandlerFunc]:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)


async def log_event(ctx: HandlerContext) -> HandlerResult:
    event = ctx.event
    logger.info(
        f"{event.provider.value} event {event.event_type} recorded without state change: {event.log_context()}"
    )
    return None
