"""
Per-event-type handlers and the dispatch table.

Every handler has the signature ``handler(ctx, event, payload) -> dict``: it
receives the typed payload produced by the parser paired with it in
``HANDLERS``, performs its writes inside the engine's open transaction and
queues notifications/token invalidation on ``ctx.effects`` for after commit.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from flask import current_app

from billing_sync.errors import SubscriptionNotFound, UserNotResolvable
from billing_sync.extensions import db
from billing_sync.models import PlanMigration, Subscription
from billing_sync.models.plan_migration import (
    MIGRATION_CROSSGRADE,
    MIGRATION_DOWNGRADE,
    MIGRATION_UPGRADE,
    REASON_PERIOD_CHANGE,
    REASON_TIER_CHANGE,
)
from billing_sync.models.subscription import (
    LIVE_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    STATUS_PAUSED,
)
from .events import (
    ChargePayload,
    CheckoutSessionPayload,
    CustomerPayload,
    InvoicePayload,
    ProviderEvent,
    SubscriptionPayload,
    parse_charge,
    parse_checkout_session,
    parse_customer,
    parse_invoice,
    parse_subscription,
)
from .identity import UserDirectory, UserResolver
from .side_effects import SideEffects
from .subscriptions import SubscriptionRecords
from .tiers import FREE_TIER, TierClassifier, is_paid
from .usage import UsagePeriodManager

USER_STATUS_DELETED = "deleted"


@dataclass
class HandlerContext:
    directory: UserDirectory
    resolver: UserResolver
    classifier: TierClassifier
    records: SubscriptionRecords
    usage: UsagePeriodManager
    gateway: object
    notifications: object
    tokens: object
    effects: SideEffects
    affiliates: object = None


# ---- shared steps ----
def _stale(event: ProviderEvent, record: Optional[Subscription]) -> dict:
    current_app.logger.info(
        "Ignoring stale %s %s for subscription %s (event %s < last applied %s)",
        event.type, event.id, record.stripe_subscription_id, event.created, record.last_event_at,
    )
    return {"processed": True, "stale": True, "subscription_id": record.id, "user_id": record.user_id}


def _invalidate(ctx: HandlerContext, user_id: int) -> None:
    ctx.effects.add("invalidate_token", ctx.tokens.invalidate, user_id)


def _notify(ctx: HandlerContext, name: str, *args) -> None:
    if not current_app.config.get("BILLING_NOTIFICATIONS_ENABLED", True):
        return
    ctx.effects.add(name, getattr(ctx.notifications, name), *args)


def _link_customer(ctx: HandlerContext, user_id: int, customer_id: Optional[str]) -> None:
    if not customer_id:
        return
    user = ctx.directory.find_by_id(user_id)
    if user is None or user.stripe_customer_id == customer_id:
        return
    if user.stripe_customer_id:
        current_app.logger.warning(
            "User %s already linked to customer %s; not relinking to %s", user_id, user.stripe_customer_id, customer_id
        )
        return
    owner = ctx.directory.find_by_provider_customer_id(customer_id)
    if owner is not None:
        current_app.logger.warning("Customer %s already belongs to user %s", customer_id, owner.id)
        return
    ctx.directory.update(user_id, stripe_customer_id=customer_id)


def _ensure_usage(ctx: HandlerContext, user_id: int, record: Subscription, tier: str, reset_counters: bool = False):
    if record.current_period_start is None:
        current_app.logger.warning("Subscription %s has no billing period; usage not tracked", record.stripe_subscription_id)
        return None
    return ctx.usage.ensure_period_usage(
        user_id,
        record.id,
        record.current_period_start,
        record.current_period_end,
        ctx.classifier.usage_limit(tier),
        reset_counters=reset_counters,
    )


def _record_migration(record: Subscription, user_id: int, from_plan, to_plan, kind, reason,
                      from_period=None, to_period=None, effective=None) -> PlanMigration:
    migration = PlanMigration(
        user_id=user_id,
        subscription_id=record.id,
        stripe_subscription_id=record.stripe_subscription_id,
        from_plan=from_plan,
        to_plan=to_plan,
        migration_type=kind,
        migration_reason=reason,
        from_billing_period=from_period,
        to_billing_period=to_period,
    )
    if effective is not None:
        migration.effective_date = effective
    db.session.add(migration)
    current_app.logger.info("Plan migration for user %s: %s -> %s (%s, %s)", user_id, from_plan, to_plan, kind, reason)
    return migration


def _activate(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload, user_id: int,
              record: Optional[Subscription]) -> dict:
    """Creation logic shared by subscription.created, checkout completion and out-of-order updates."""
    tier = ctx.classifier.tier_for_price(sub.price_id)
    previous_plan = record.plan_name if record is not None else None
    first_seen = record is None

    record = ctx.records.upsert(sub, user_id, tier, event.created, record)
    if is_paid(tier):
        ctx.records.cancel_free_placeholders(user_id, record.id)

    ctx.directory.update(user_id, subscription_tier=tier, subscription_status=sub.status)
    _link_customer(ctx, user_id, sub.customer_id)
    usage = _ensure_usage(ctx, user_id, record, tier)

    _invalidate(ctx, user_id)
    if is_paid(tier) and previous_plan != tier:
        _notify(ctx, "send_upgrade_email", user_id, previous_plan or FREE_TIER, tier)
    if first_seen and is_paid(tier) and ctx.affiliates is not None:
        ctx.effects.add("track_affiliate_conversion", ctx.affiliates.track_conversion, user_id, sub.id, sub.unit_amount)

    return {
        "processed": True,
        "user_id": user_id,
        "subscription_id": record.id,
        "tier": tier,
        "status": record.status,
        "usage_id": usage.id if usage is not None else None,
    }


# ---- customer.subscription.* ----
def handle_subscription_created(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = ctx.records.get_by_provider_id(sub.id, for_update=True)
    if ctx.records.is_stale(record, event.created):
        return _stale(event, record)
    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)
    return _activate(ctx, event, sub, user_id, record)


def handle_subscription_updated(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = ctx.records.get_by_provider_id(sub.id, for_update=True)
    if ctx.records.is_stale(record, event.created):
        return _stale(event, record)
    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)

    if record is None:
        current_app.logger.info("Update for unknown subscription %s; creating it", sub.id)
        return _activate(ctx, event, sub, user_id, None)

    old_tier = record.plan_name
    new_tier = ctx.classifier.tier_for_price(sub.price_id)
    old_period = ctx.classifier.billing_period_for_price(record.price_id)
    new_period = ctx.classifier.billing_period_for_price(sub.price_id)
    new_limit = ctx.classifier.usage_limit(new_tier)

    change = None
    if old_tier != new_tier:
        change = ctx.classifier.change_type(old_tier, new_tier)
        _record_migration(record, user_id, old_tier, new_tier, change, REASON_TIER_CHANGE,
                          old_period, new_period, effective=event.created)
        ctx.usage.apply_tier_change(user_id, record.id, old_tier, new_tier, new_limit)
    elif old_period and new_period and old_period != new_period:
        _record_migration(record, user_id, old_tier, new_tier, MIGRATION_CROSSGRADE, REASON_PERIOD_CHANGE,
                          old_period, new_period, effective=event.created)
        if sub.current_period_start is not None:
            ctx.usage.apply_period_transition(user_id, record.id, sub.current_period_start, sub.current_period_end)

    record = ctx.records.upsert(sub, user_id, new_tier, event.created, record)
    if is_paid(new_tier) and sub.status in LIVE_STATUSES:
        ctx.records.cancel_free_placeholders(user_id, record.id)
    usage = _ensure_usage(ctx, user_id, record, new_tier)

    ctx.directory.update(user_id, subscription_tier=new_tier, subscription_status=sub.status)
    _link_customer(ctx, user_id, sub.customer_id)

    _invalidate(ctx, user_id)
    if change == MIGRATION_UPGRADE:
        _notify(ctx, "send_upgrade_email", user_id, old_tier, new_tier)
    elif change == MIGRATION_DOWNGRADE:
        _notify(ctx, "send_downgrade_email", user_id, old_tier, new_tier)

    return {
        "processed": True,
        "user_id": user_id,
        "subscription_id": record.id,
        "tier": new_tier,
        "status": record.status,
        "change": change,
        "usage_id": usage.id if usage is not None else None,
    }


def handle_subscription_deleted(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = ctx.records.get_by_provider_id(sub.id, for_update=True)
    if record is None:
        current_app.logger.warning("Deletion for unknown subscription %s; nothing to update", sub.id)
        return {"processed": True, "reason": "subscription not found"}
    if ctx.records.is_stale(record, event.created):
        return _stale(event, record)

    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)
    ended_plan = record.plan_name
    ctx.records.set_status(record, STATUS_CANCELED, event.created, cancel_at_period_end=False)

    reverted = False
    if ctx.records.has_other_paid_subscription(user_id, record.id):
        current_app.logger.info("User %s keeps another paid subscription; tier unchanged", user_id)
    else:
        ctx.directory.update(user_id, subscription_tier=FREE_TIER, subscription_status=STATUS_CANCELED)
        reverted = True

    _invalidate(ctx, user_id)
    _notify(ctx, "send_cancellation_email", user_id, ended_plan, record.current_period_end)

    return {
        "processed": True,
        "user_id": user_id,
        "subscription_id": record.id,
        "status": STATUS_CANCELED,
        "reverted_to_free": reverted,
    }


def _require_record(ctx: HandlerContext, sub: SubscriptionPayload) -> Subscription:
    record = ctx.records.get_by_provider_id(sub.id, for_update=True)
    if record is None:
        raise SubscriptionNotFound(f"No subscription record for {sub.id}", stripe_subscription_id=sub.id)
    return record


def handle_subscription_paused(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = _require_record(ctx, sub)
    if ctx.records.is_stale(record, event.created):
        return _stale(event, record)
    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)
    ctx.records.set_status(record, STATUS_PAUSED, event.created)
    ctx.directory.update(user_id, subscription_status=STATUS_PAUSED)
    _invalidate(ctx, user_id)
    return {"processed": True, "user_id": user_id, "subscription_id": record.id, "status": STATUS_PAUSED}


def handle_subscription_resumed(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = _require_record(ctx, sub)
    if ctx.records.is_stale(record, event.created):
        return _stale(event, record)
    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)
    tier = ctx.classifier.tier_for_price(sub.price_id)

    record = ctx.records.upsert(sub, user_id, tier, event.created, record)
    ctx.records.set_status(record, STATUS_ACTIVE)
    usage = _ensure_usage(ctx, user_id, record, tier)
    if usage is not None:
        ctx.usage.set_limit(usage, ctx.classifier.usage_limit(tier))

    ctx.directory.update(user_id, subscription_tier=tier, subscription_status=STATUS_ACTIVE)
    _invalidate(ctx, user_id)
    return {"processed": True, "user_id": user_id, "subscription_id": record.id, "tier": tier, "status": STATUS_ACTIVE}


def handle_trial_will_end(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = ctx.records.get_by_provider_id(sub.id)
    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)
    _notify(ctx, "send_trial_ending_email", user_id, sub.trial_end)
    trial_end = sub.trial_end.isoformat() if sub.trial_end else None
    return {"processed": True, "user_id": user_id, "trial_end": trial_end}


def handle_trial_ended(ctx: HandlerContext, event: ProviderEvent, sub: SubscriptionPayload) -> dict:
    record = _require_record(ctx, sub)
    if ctx.records.is_stale(record, event.created):
        return _stale(event, record)
    user_id = ctx.resolver.resolve(sub.user_hint, sub.customer_id, record)
    ctx.records.set_status(record, sub.status, event.created, trial_end=sub.trial_end or record.trial_end)
    ctx.directory.update(user_id, subscription_status=sub.status)
    _invalidate(ctx, user_id)
    return {"processed": True, "user_id": user_id, "subscription_id": record.id, "status": sub.status}


# ---- invoice.* ----
def handle_payment_succeeded(ctx: HandlerContext, event: ProviderEvent, invoice: InvoicePayload) -> dict:
    if not invoice.subscription_id:
        current_app.logger.info("Invoice %s is not tied to a subscription", invoice.id)
        return {"processed": True, "reason": "no subscription on invoice"}

    sub = parse_subscription(ctx.gateway.retrieve_subscription(invoice.subscription_id))
    record = ctx.records.get_by_provider_id(sub.id, for_update=True)
    user_id = ctx.resolver.resolve(
        invoice.user_hint or sub.user_hint, invoice.customer_id or sub.customer_id, record
    )
    tier = ctx.classifier.tier_for_price(sub.price_id)

    # The fetched object is the provider's current state, newer than any queued event
    record = ctx.records.upsert(sub, user_id, tier, event.created, record)
    if is_paid(tier) and sub.status in LIVE_STATUSES:
        ctx.records.cancel_free_placeholders(user_id, record.id)
    usage = _ensure_usage(ctx, user_id, record, tier, reset_counters=True)

    ctx.directory.update(user_id, subscription_tier=tier, subscription_status=sub.status)
    _invalidate(ctx, user_id)
    return {
        "processed": True,
        "user_id": user_id,
        "subscription_id": record.id,
        "tier": tier,
        "status": sub.status,
        "billing_reason": invoice.billing_reason,
        "amount_paid": invoice.amount_paid,
        "usage_id": usage.id if usage is not None else None,
    }


def _invoice_user(ctx: HandlerContext, invoice: InvoicePayload) -> Tuple[int, Optional[Subscription]]:
    record = ctx.records.get_by_provider_id(invoice.subscription_id)
    return ctx.resolver.resolve(invoice.user_hint, invoice.customer_id, record), record


def handle_payment_failed(ctx: HandlerContext, event: ProviderEvent, invoice: InvoicePayload) -> dict:
    user_id, record = _invoice_user(ctx, invoice)
    ctx.directory.update(user_id, subscription_status=STATUS_PAST_DUE)
    _invalidate(ctx, user_id)
    _notify(ctx, "send_payment_failed_email", user_id, invoice.id)
    return {
        "processed": True,
        "user_id": user_id,
        "subscription_id": record.id if record is not None else None,
        "status": STATUS_PAST_DUE,
    }


def handle_payment_action_required(ctx: HandlerContext, event: ProviderEvent, invoice: InvoicePayload) -> dict:
    user_id, record = _invoice_user(ctx, invoice)
    ctx.directory.update(user_id, subscription_status=STATUS_INCOMPLETE)
    _invalidate(ctx, user_id)
    return {
        "processed": True,
        "user_id": user_id,
        "subscription_id": record.id if record is not None else None,
        "status": STATUS_INCOMPLETE,
        "payment_intent_status": invoice.payment_intent_status,
    }


# ---- checkout ----
def handle_checkout_completed(ctx: HandlerContext, event: ProviderEvent, session: CheckoutSessionPayload) -> dict:
    if not session.subscription_id:
        current_app.logger.info("Checkout session %s has no subscription", session.id)
        return {"processed": False, "reason": "no subscription in checkout session"}

    sub = parse_subscription(ctx.gateway.retrieve_subscription(session.subscription_id))
    record = ctx.records.get_by_provider_id(sub.id, for_update=True)
    try:
        user_id = ctx.resolver.resolve(
            session.user_hint or sub.user_hint, session.customer_id or sub.customer_id, record
        )
    except UserNotResolvable:
        current_app.logger.warning("Checkout session %s could not be tied to a user", session.id)
        return {"processed": False, "reason": "user not found"}
    return _activate(ctx, event, sub, user_id, record)


# ---- customer.* ----
def handle_customer_created(ctx: HandlerContext, event: ProviderEvent, customer: CustomerPayload) -> dict:
    user_id = ctx.resolver.resolve_hint(customer.user_hint)
    if user_id is None and customer.email:
        user = ctx.directory.find_by_email(customer.email)
        user_id = user.id if user is not None else None
    if user_id is None:
        return {"processed": True, "linked": False, "reason": "no matching user"}

    before = ctx.directory.find_by_id(user_id).stripe_customer_id
    _link_customer(ctx, user_id, customer.id)
    linked = ctx.directory.find_by_id(user_id).stripe_customer_id == customer.id
    return {"processed": True, "user_id": user_id, "linked": linked and before != customer.id}


def handle_customer_updated(ctx: HandlerContext, event: ProviderEvent, customer: CustomerPayload) -> dict:
    user = ctx.directory.find_by_provider_customer_id(customer.id)
    if user is None:
        return {"processed": True, "reason": "customer not linked"}
    if not customer.email or customer.email == (user.email or "").lower():
        return {"processed": True, "user_id": user.id, "email_changed": False}

    other = ctx.directory.find_by_email(customer.email)
    if other is not None and other.id != user.id:
        current_app.logger.warning(
            "Customer %s email %s already belongs to user %s; not syncing", customer.id, customer.email, other.id
        )
        return {"processed": True, "user_id": user.id, "email_changed": False}

    ctx.directory.update(user.id, email=customer.email)
    return {"processed": True, "user_id": user.id, "email_changed": True}


def handle_customer_deleted(ctx: HandlerContext, event: ProviderEvent, customer: CustomerPayload) -> dict:
    user = ctx.directory.find_by_provider_customer_id(customer.id)
    if user is None:
        return {"processed": True, "reason": "customer not linked"}
    ctx.directory.update(user.id, stripe_customer_id=None, subscription_status=USER_STATUS_DELETED)
    _invalidate(ctx, user.id)
    return {"processed": True, "user_id": user.id, "status": USER_STATUS_DELETED}


# ---- charge.* ----
def handle_charge(ctx: HandlerContext, event: ProviderEvent, charge: ChargePayload) -> dict:
    level = logging.WARNING if charge.failure_code else logging.INFO
    current_app.logger.log(
        level,
        "%s %s customer=%s amount=%s refunded=%s currency=%s failure=%s (%s)",
        event.type, charge.id, charge.customer_id, charge.amount,
        charge.amount_refunded, charge.currency, charge.failure_code, charge.failure_message,
    )
    return {"processed": True, "logged": True}


Handler = Callable[[HandlerContext, ProviderEvent, object], dict]

HANDLERS: Dict[str, Tuple[Callable, Handler]] = {
    "customer.subscription.created": (parse_subscription, handle_subscription_created),
    "customer.subscription.updated": (parse_subscription, handle_subscription_updated),
    "customer.subscription.deleted": (parse_subscription, handle_subscription_deleted),
    "customer.subscription.paused": (parse_subscription, handle_subscription_paused),
    "customer.subscription.resumed": (parse_subscription, handle_subscription_resumed),
    "customer.subscription.trial_will_end": (parse_subscription, handle_trial_will_end),
    "customer.subscription.trial_ended": (parse_subscription, handle_trial_ended),
    "invoice.payment_succeeded": (parse_invoice, handle_payment_succeeded),
    "invoice.paid": (parse_invoice, handle_payment_succeeded),
    "invoice.payment_failed": (parse_invoice, handle_payment_failed),
    "invoice.payment_action_required": (parse_invoice, handle_payment_action_required),
    "checkout.session.completed": (parse_checkout_session, handle_checkout_completed),
    "customer.created": (parse_customer, handle_customer_created),
    "customer.updated": (parse_customer, handle_customer_updated),
    "customer.deleted": (parse_customer, handle_customer_deleted),
    "charge.succeeded": (parse_charge, handle_charge),
    "charge.failed": (parse_charge, handle_charge),
    "charge.refunded": (parse_charge, handle_charge),
}
