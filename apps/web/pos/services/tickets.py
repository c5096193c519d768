"""
Kitchen ticket state machine.

    placed -> preparing -> ready -> completed
    any status except canceled -> canceled

Moves are strictly forward. Canceled wins from any status except canceled
itself, including completed (a refund after pickup cancels the ticket).
transition_ticket is the only writer of KitchenTicket.status; it applies
each move with a compare-and-set update on the current status.
"""

import logging
import secrets
from datetime import datetime

from django.db import IntegrityError, transaction
from django.db.models import QuerySet
from django.utils import timezone
from tableside_schemas import CanonicalOrder, CanonicalOrderStatus, FulfillmentStatus

from apps.web.pos.models import KitchenTicket, Order, TicketStatus

logger = logging.getLogger(__name__)

STATUS_RANK = {
    TicketStatus.PLACED: 0,
    TicketStatus.PREPARING: 1,
    TicketStatus.READY: 2,
    TicketStatus.COMPLETED: 3,
}

_TIMESTAMP_FIELDS = {
    TicketStatus.PREPARING: "preparing_at",
    TicketStatus.READY: "ready_at",
    TicketStatus.COMPLETED: "completed_at",
    TicketStatus.CANCELED: "canceled_at",
}

SHORTCODE_ATTEMPTS = 10


class ShortcodeExhaustedError(Exception):
    """Could not find a free shortcode for the location."""


def generate_shortcode() -> str:
    """Four uppercase hex characters, e.g. ``3F9A``."""
    return secrets.token_hex(2).upper()


def can_transition(current: str, target: str) -> bool:
    if current == TicketStatus.CANCELED or current == target:
        return False
    if target == TicketStatus.CANCELED:
        return True
    if current == TicketStatus.COMPLETED:
        return False
    return STATUS_RANK[TicketStatus(target)] > STATUS_RANK[TicketStatus(current)]


# =============================================================================
# Creation
# =============================================================================


def ensure_ticket(order: Order, actor: str) -> tuple[KitchenTicket, bool]:
    """
    Get or create the ticket for an order, in placed.

    The shortcode is drawn once; a collision with another ticket at the same
    location is retried in a fresh savepoint.

    Returns:
        (ticket, created)

    Raises:
        ShortcodeExhaustedError: If every attempt collided.
    """
    existing = KitchenTicket.objects.filter(order=order).first()
    if existing is not None:
        return existing, False

    for _ in range(SHORTCODE_ATTEMPTS):
        shortcode = generate_shortcode()
        try:
            with transaction.atomic():
                ticket = KitchenTicket.objects.create(
                    client=order.client,
                    order=order,
                    location=order.location,
                    source=order.source,
                    status=TicketStatus.PLACED,
                    shortcode=shortcode,
                    last_updated_by=actor,
                    last_updated_at=timezone.now(),
                )
        except IntegrityError:
            # Either the shortcode is taken or another worker created the ticket
            existing = KitchenTicket.objects.filter(order=order).first()
            if existing is not None:
                return existing, False
            logger.info(
                "Shortcode %s taken at location %s, retrying",
                shortcode,
                order.location_id,
            )
            continue
        logger.info("Created ticket #%s for order %s", shortcode, order.reference)
        return ticket, True

    raise ShortcodeExhaustedError(
        f"No free shortcode for location {order.location_id} "
        f"after {SHORTCODE_ATTEMPTS} attempts"
    )


# =============================================================================
# Transitions
# =============================================================================


def transition_ticket(
    ticket: KitchenTicket,
    status: str,
    actor: str,
    now: datetime | None = None,
) -> bool:
    """
    Move a ticket to a new status if the move is allowed.

    Args:
        ticket: Ticket to move; updated in place on success.
        status: Target status.
        actor: Who made the change (e.g. ``worker:square``, ``user:alice``).
        now: Clock override (tests).

    Returns:
        True if the status changed, False if the move was rejected or lost
        a race with another writer.
    """
    target = TicketStatus(status)
    current = ticket.status
    if not can_transition(current, target):
        logger.info(
            "Rejected ticket #%s transition %s -> %s by %s",
            ticket.shortcode,
            current,
            target,
            actor,
        )
        return False

    now = now or timezone.now()
    updates = {
        "status": target,
        _TIMESTAMP_FIELDS[target]: now,
        "last_updated_by": actor,
        "last_updated_at": now,
        "updated_at": now,
    }
    updated = KitchenTicket.objects.filter(pk=ticket.pk, status=current).update(**updates)
    if not updated:
        logger.warning(
            "Ticket #%s changed concurrently; %s -> %s by %s not applied",
            ticket.shortcode,
            current,
            target,
            actor,
        )
        ticket.refresh_from_db()
        return False

    for name, value in updates.items():
        setattr(ticket, name, value)
    logger.info(
        "Ticket #%s %s -> %s by %s", ticket.shortcode, current, target, actor
    )
    return True


def target_status_for_order(canonical: CanonicalOrder) -> TicketStatus:
    """Ticket status implied by the POS view of an order."""
    if canonical.status == CanonicalOrderStatus.CANCELED:
        return TicketStatus.CANCELED
    if canonical.status == CanonicalOrderStatus.COMPLETED:
        return TicketStatus.COMPLETED
    fulfillment = canonical.fulfillment_status
    if fulfillment == FulfillmentStatus.PREPARING:
        return TicketStatus.PREPARING
    if fulfillment == FulfillmentStatus.READY:
        return TicketStatus.READY
    if fulfillment == FulfillmentStatus.COMPLETED:
        return TicketStatus.COMPLETED
    if fulfillment == FulfillmentStatus.CANCELED:
        return TicketStatus.CANCELED
    return TicketStatus.PLACED


def sync_ticket_from_order(
    order: Order,
    canonical: CanonicalOrder,
    actor: str,
) -> KitchenTicket | None:
    """
    Create or advance the ticket for an order from its canonical state.

    A canceled order with no ticket yet does not get one. Stale or backwards
    targets are rejected by transition_ticket, so a late event never
    regresses a ticket.

    Returns:
        The ticket, or None when no ticket exists or was created.
    """
    target = target_status_for_order(canonical)
    ticket = KitchenTicket.objects.filter(order=order).first()
    if ticket is None:
        if target == TicketStatus.CANCELED:
            logger.info(
                "Order %s canceled before a ticket was created", order.reference
            )
            return None
        ticket, _ = ensure_ticket(order, actor)

    if target != TicketStatus.PLACED and target != ticket.status:
        transition_ticket(ticket, target, actor)
    return ticket


def update_ticket_status(
    ticket_id: int,
    status: str,
    actor: str,
    queryset: QuerySet[KitchenTicket] | None = None,
) -> tuple[KitchenTicket, bool]:
    """
    Operator path (kitchen display) for moving a ticket.

    Args:
        ticket_id: Ticket primary key.
        status: Target status.
        actor: Who made the change.
        queryset: Tickets the caller may see; defaults to all tickets.

    Raises:
        KitchenTicket.DoesNotExist: If the ticket is not in the queryset.
        ValueError: If status is not a ticket status.
    """
    tickets = queryset if queryset is not None else KitchenTicket.objects.all()
    ticket = tickets.get(pk=ticket_id)
    changed = transition_ticket(ticket, status, actor)
    return ticket, changed
