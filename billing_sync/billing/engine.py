"""
Webhook Reconciliation Engine.

    parse once -> idempotency guard -> dispatch -> handler writes + processed
    mark in one transaction -> commit -> post-commit side effects

A failing handler rolls back its writes, leaves the event row ``failed`` with
the error message and re-raises so the route answers non-2xx and the provider
redelivers; the redelivery re-claims the row and retries.
"""
import calendar
import logging
import time
import uuid
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from billing_sync.errors import EventNotFound, MalformedEvent, PersistenceFailure
from billing_sync.extensions import db
from billing_sync.observability import log_event
from billing_sync.models.types import utcnow
from .catalog import PlanCatalog
from .event_store import EventStore
from .events import ProviderEvent, parse_event
from .handlers import HANDLERS, HandlerContext
from .identity import UserDirectory, UserResolver
from .provider import StripeGateway
from .side_effects import SideEffects
from .subscriptions import SubscriptionRecords
from .tiers import TierClassifier
from .usage import UsagePeriodManager

NOT_HANDLED = "not handled"


def _subscription_ref(event: ProviderEvent) -> Optional[str]:
    obj = event.object
    if event.type.startswith("customer.subscription."):
        return obj.get("id")
    ref = obj.get("subscription")
    if isinstance(ref, dict):
        return ref.get("id")
    return ref or None


class ReconciliationEngine:
    def __init__(self, store: EventStore, directory: UserDirectory, resolver: UserResolver,
                 classifier: TierClassifier, records: SubscriptionRecords, usage: UsagePeriodManager,
                 gateway, notifications, tokens, handlers=None, affiliates=None):
        self.store = store
        self.directory = directory
        self.resolver = resolver
        self.classifier = classifier
        self.records = records
        self.usage = usage
        self.gateway = gateway
        self.notifications = notifications
        self.tokens = tokens
        self.affiliates = affiliates
        self.handlers = handlers if handlers is not None else HANDLERS

    def _context(self, effects: SideEffects) -> HandlerContext:
        return HandlerContext(
            directory=self.directory,
            resolver=self.resolver,
            classifier=self.classifier,
            records=self.records,
            usage=self.usage,
            gateway=self.gateway,
            notifications=self.notifications,
            tokens=self.tokens,
            effects=effects,
            affiliates=self.affiliates,
        )

    def process(self, raw_event: Any) -> Dict[str, Any]:
        event = parse_event(raw_event)
        start = time.perf_counter()

        guard = self.store.record_if_new(event.id, event.type, event.raw, _subscription_ref(event))
        if guard.duplicate:
            current_app.logger.info("Event %s (%s) already processed", event.id, event.type)
            log_event("stripe_webhook", event_id=event.id, type=event.type, outcome="duplicate")
            return {"processed": True, "duplicate": True}
        if guard.in_flight:
            current_app.logger.info("Event %s (%s) is being processed by another worker", event.id, event.type)
            log_event("stripe_webhook", event_id=event.id, type=event.type, outcome="in_progress")
            return {"processed": False, "in_progress": True}

        effects = SideEffects()
        try:
            entry = self.handlers.get(event.type)
            if entry is None:
                current_app.logger.info("Unhandled event type %s (%s)", event.type, event.id)
                result = {"processed": False, "reason": NOT_HANDLED}
            else:
                parser, handler = entry
                result = handler(self._context(effects), event, parser(event.object))
            self.store.mark_processed(event.id, result, user_id=result.get("user_id"))
            db.session.commit()
        except SQLAlchemyError as exc:
            self._fail(event, exc, start)
            raise PersistenceFailure(f"Database error while processing {event.id}: {exc}", event_id=event.id) from exc
        except Exception as exc:
            self._fail(event, exc, start)
            raise

        failed_effects = effects.run()
        log_event(
            "stripe_webhook",
            event_id=event.id,
            type=event.type,
            outcome="processed",
            user_id=result.get("user_id"),
            retry=guard.record.retry_count if guard.record is not None else 0,
            side_effects_failed=failed_effects or None,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return result

    def _fail(self, event: ProviderEvent, exc: Exception, start: float) -> None:
        db.session.rollback()
        message = f"{type(exc).__name__}: {exc}"
        current_app.logger.exception("Processing %s (%s) failed", event.id, event.type)
        self.store.mark_failed(event.id, message)
        log_event(
            "stripe_webhook",
            level=logging.WARNING,
            event_id=event.id,
            type=event.type,
            outcome="failed",
            error=message,
            retriable=getattr(exc, "retriable", True),
            latency_ms=int((time.perf_counter() - start) * 1000),
        )

    # ---- operations ----
    def resync_subscription(self, stripe_subscription_id: str) -> Dict[str, Any]:
        """Pull the provider's current state and apply it as a subscription update."""
        sub_obj = self.gateway.retrieve_subscription(stripe_subscription_id)
        ts = calendar.timegm(utcnow().utctimetuple())
        current_app.logger.info("Manual resync of subscription %s", stripe_subscription_id)
        return self.process({
            "id": f"resync:{stripe_subscription_id}:{ts}:{uuid.uuid4().hex[:12]}",
            "type": "customer.subscription.updated",
            "created": ts,
            "data": {"object": sub_obj},
        })

    def replay(self, event_id: str) -> Dict[str, Any]:
        record = self.store.get(event_id)
        if record is None:
            raise EventNotFound(f"No stored event {event_id}", event_id=event_id)
        if not record.signature_valid or not record.payload:
            raise MalformedEvent(f"Event {event_id} has no verified payload to replay", event_id=event_id)
        if record.succeeded:
            return {"processed": True, "duplicate": True}
        current_app.logger.info("Replaying %s (%s), retry %s", event_id, record.event_type, record.retry_count)
        return self.process(record.payload)

    def replay_failed(self, limit: int = 50, max_retries: Optional[int] = None) -> Dict[str, Any]:
        summary = {"attempted": 0, "succeeded": 0, "failed": 0, "errors": {}}
        event_ids = [r.stripe_event_id for r in self.store.list_failed(limit=limit, max_retries=max_retries)
                     if r.signature_valid]
        for event_id in event_ids:
            summary["attempted"] += 1
            try:
                self.replay(event_id)
                summary["succeeded"] += 1
            except Exception as exc:
                summary["failed"] += 1
                summary["errors"][event_id] = str(exc)
        return summary


def build_engine(app, notifications, tokens, gateway=None, affiliates=None) -> ReconciliationEngine:
    """Wire the engine from app config; collaborators live as long as the app."""
    catalog = PlanCatalog()
    directory = UserDirectory()
    return ReconciliationEngine(
        store=EventStore(lease_seconds=app.config.get("BILLING_EVENT_LEASE_SECONDS", 300)),
        directory=directory,
        resolver=UserResolver(directory),
        classifier=TierClassifier(catalog),
        records=SubscriptionRecords(),
        usage=UsagePeriodManager(),
        gateway=gateway or StripeGateway(max_network_retries=app.config.get("STRIPE_MAX_NETWORK_RETRIES")),
        notifications=notifications,
        tokens=tokens,
        affiliates=affiliates,
    )
