"""End-to-end dispatch scenarios on the service layer.

These drive ``DispatchService`` and ``DispatchScheduler`` together against
the in-memory database with a fake courier.
"""

import asyncio
import json

import pytest
from sqlalchemy import func, select

from app.core.errors import NoCandidateAvailable, NotFoundError, StateConflict, ValidationError
from app.models import (
    ACTIVE_RIDER_STATUSES,
    Delivery,
    DeliveryStatus,
    Order,
    OrderStatus,
    Rider,
    ScheduledTask,
    TaskKind,
)
from app.services.dispatch_service import DispatchService, external_delivery_ref
from app.services.normalizer import DeliveryDelivered, DeliveryPickedUp
from app.services.notifications import StatusNotifier
from app.services.providers import CourierState
from app.services.scheduler_service import DispatchScheduler


S = DeliveryStatus


def gloria_body(order_id=501, status="accepted") -> bytes:
    return json.dumps({
        "count": 1,
        "orders": [{
            "id": order_id,
            "status": status,
            "type": "delivery",
            "total_price": "18.40",
            "client_first_name": "Robin",
            "client_address": "5 Harbor Rd",
            "client_phone": "+15550177",
            "latitude": 40.7140,
            "longitude": -74.0040,
        }],
    }).encode()


@pytest.fixture
def notifier():
    return StatusNotifier()


@pytest.fixture
def changes(notifier):
    received = []
    notifier.subscribe(received.append)
    return received


@pytest.fixture
def service(db_session, providers, notifier, locks, clock):
    return DispatchService(db_session, providers=providers, notifier=notifier, locks=locks, clock=clock)


@pytest.fixture
def scheduler(session_factory, providers, locks, clock):
    return DispatchScheduler(
        session_factory=session_factory, providers=providers, locks=locks, clock=clock, rand=lambda: 0.0
    )


def assert_loads_consistent(db_session):
    """Every rider's load equals its count of active deliveries."""
    db_session.expire_all()
    for rider in db_session.scalars(select(Rider)):
        active = db_session.scalar(
            select(func.count(Delivery.id)).where(
                Delivery.rider_id == rider.id, Delivery.status.in_(ACTIVE_RIDER_STATUSES)
            )
        )
        assert rider.current_load == active, rider


class TestOrderToDispatch:
    """A new order flows through to a dispatched courier delivery."""

    @pytest.mark.asyncio
    async def test_full_flow(self, db_session, service, scheduler, restaurant, rider, fake_courier, changes):
        [result] = await service.ingest_webhook("gloria_food", gloria_body(), "gf-key-1", None)

        assert result.status == "processed"
        assert result.delivery_status == "assigned"
        delivery_id = result.delivery_id
        assert [(c.from_status, c.to_status) for c in changes] == [
            ("created", "confirmed"),
            ("confirmed", "assignment_pending"),
            ("assignment_pending", "assigned"),
        ]

        assert await scheduler.process_due_tasks() == 1

        db_session.expire_all()
        delivery = db_session.get(Delivery, delivery_id)
        assert delivery.status == S.DISPATCHED
        assert delivery.external_delivery_id == external_delivery_ref(delivery_id)
        assert delivery.requested_at <= delivery.accepted_at
        assert fake_courier.requests[0].order_value == delivery.order.total_amount
        assert_loads_consistent(db_session)

        # Courier reports progress through polling
        fake_courier.poll_results = [CourierState.PICKED_UP, CourierState.DELIVERED]
        db_session.query(ScheduledTask).delete()
        db_session.commit()
        await scheduler.poll_once()
        await scheduler.poll_once()

        db_session.expire_all()
        delivery = db_session.get(Delivery, delivery_id)
        assert delivery.status == S.DELIVERED
        assert delivery.picked_up_at <= delivery.delivered_at
        assert db_session.get(Rider, rider.id).current_load == 0
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_redelivered_order_webhook(self, db_session, service, restaurant, rider):
        first = await service.ingest_webhook("gloria_food", gloria_body(), "gf-key-1", None)
        second = await service.ingest_webhook("gloria_food", gloria_body(), "gf-key-1", None)

        assert first[0].status == "processed"
        assert second[0].status == "duplicate"
        assert db_session.scalar(select(func.count(Order.id))) == 1
        assert db_session.scalar(select(func.count(ScheduledTask.id))) == 1
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_orders(self, db_session, session_factory, providers, locks, clock,
                                               restaurant, rider):
        one = DispatchService(session_factory(), providers=providers, locks=locks, clock=clock)
        two = DispatchService(session_factory(), providers=providers, locks=locks, clock=clock)
        try:
            results = await asyncio.gather(
                one.ingest_webhook("gloria_food", gloria_body(), "gf-key-1", None),
                two.ingest_webhook("gloria_food", gloria_body(), "gf-key-1", None),
            )
        finally:
            one.db.close()
            two.db.close()

        assert sorted(r[0].status for r in results) == ["duplicate", "processed"]
        assert db_session.scalar(select(func.count(Delivery.id))) == 1
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_unauthenticated_webhook_changes_nothing(self, db_session, service, restaurant, rider):
        with pytest.raises(ValidationError) as exc_info:
            await service.ingest_webhook("gloria_food", gloria_body(), "wrong", None)

        assert exc_info.value.authenticity
        assert db_session.scalar(select(func.count(Order.id))) == 0


class TestAssignment:
    """Manual and automatic rider assignment."""

    @pytest.mark.asyncio
    async def test_assign_after_rider_becomes_available(self, db_session, service, restaurant, make_rider):
        [result] = await service.ingest_webhook("gloria_food", gloria_body(), "gf-key-1", None)
        assert result.delivery_status == "assignment_pending"

        rider = make_rider(name="Late shift")
        assigned = await service.assign_rider(result.delivery_id)

        assert assigned.id == rider.id
        db_session.expire_all()
        assert db_session.get(Delivery, result.delivery_id).status == S.ASSIGNED
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_no_candidate(self, db_session, service, make_delivery, make_rider):
        make_rider(is_available=False)
        delivery = make_delivery(S.ASSIGNMENT_PENDING)

        with pytest.raises(NoCandidateAvailable):
            await service.assign_rider(delivery.id)

        db_session.expire_all()
        assert db_session.get(Delivery, delivery.id).status == S.ASSIGNMENT_PENDING

    @pytest.mark.asyncio
    async def test_confirmed_delivery_moves_to_pending_even_without_rider(self, db_session, service, make_delivery):
        delivery = make_delivery(S.CONFIRMED)

        with pytest.raises(NoCandidateAvailable):
            await service.assign_rider(delivery.id)

        db_session.expire_all()
        assert db_session.get(Delivery, delivery.id).status == S.ASSIGNMENT_PENDING

    @pytest.mark.asyncio
    async def test_assigning_twice_conflicts(self, db_session, service, make_delivery, rider):
        delivery = make_delivery(S.ASSIGNMENT_PENDING)
        await service.assign_rider(delivery.id)

        with pytest.raises(StateConflict):
            await service.assign_rider(delivery.id)
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_concurrent_assignments_respect_capacity(self, db_session, session_factory, providers, locks,
                                                           clock, make_delivery, make_rider):
        solo = make_rider(name="Solo", max_concurrent_deliveries=1)
        first = make_delivery(S.ASSIGNMENT_PENDING)
        second = make_delivery(S.ASSIGNMENT_PENDING)
        services = [
            DispatchService(session_factory(), providers=providers, locks=locks, clock=clock) for _ in range(2)
        ]
        try:
            outcomes = await asyncio.gather(
                services[0].assign_rider(first.id),
                services[1].assign_rider(second.id),
                return_exceptions=True,
            )
        finally:
            for s in services:
                s.db.close()

        assert sum(isinstance(o, Rider) for o in outcomes) == 1
        assert sum(isinstance(o, NoCandidateAvailable) for o in outcomes) == 1
        db_session.expire_all()
        assert db_session.get(Rider, solo.id).current_load == 1
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, service):
        with pytest.raises(NotFoundError):
            await service.assign_rider(424242)


class TestCourierEvents:
    """Webhook and poll results racing each other."""

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_apply_once(self, db_session, service, make_delivery, rider, changes):
        delivery = make_delivery(S.DISPATCHED, rider=rider)
        event = DeliveryPickedUp(delivery.external_delivery_id)

        results = await asyncio.gather(service.apply_courier_event(event), service.apply_courier_event(event))

        assert sorted(r.status for r in results) == ["noop", "processed"]
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_forward_events_in_either_order_never_conflict(self, db_session, service, make_delivery, rider):
        delivery = make_delivery(S.DISPATCHED, rider=rider)
        ref = delivery.external_delivery_id

        await asyncio.gather(
            service.apply_courier_event(DeliveryPickedUp(ref)),
            service.apply_courier_event(DeliveryDelivered(ref)),
        )

        db_session.expire_all()
        assert db_session.get(Delivery, delivery.id).status == S.DELIVERED
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_regression_after_delivered_conflicts(self, db_session, service, make_delivery, rider):
        delivery = make_delivery(S.DISPATCHED, rider=rider)
        ref = delivery.external_delivery_id
        await service.apply_courier_event(DeliveryDelivered(ref))

        with pytest.raises(StateConflict):
            await service.apply_courier_event(DeliveryPickedUp(ref))

        db_session.expire_all()
        assert db_session.get(Delivery, delivery.id).status == S.DELIVERED

    @pytest.mark.asyncio
    async def test_event_for_other_restaurant_ignored(self, db_session, service, make_delivery, rider,
                                                     self_fulfilled_restaurant):
        delivery = make_delivery(S.DISPATCHED, rider=rider)

        result = await service.apply_courier_event(
            DeliveryPickedUp(delivery.external_delivery_id), restaurant_id=self_fulfilled_restaurant.id
        )

        assert result.status == "ignored"

    def test_find_delivery_by_reference(self, service, make_delivery, rider):
        dispatched = make_delivery(S.DISPATCHED, rider=rider)
        assigned = make_delivery(S.ASSIGNED, rider=rider)
        self_run = make_delivery(S.CONFIRMED, provider=None)

        assert service.find_delivery_for_event(dispatched.external_delivery_id).id == dispatched.id
        assert service.find_delivery_for_event(f"dlv-{assigned.id}").id == assigned.id
        assert service.find_delivery_for_event(f"dlv-{self_run.id}") is None
        assert service.find_delivery_for_event("other-7") is None
        assert service.find_delivery_for_event(None) is None


class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_cancel_assigned_delivery(self, db_session, service, make_delivery, rider):
        delivery = make_delivery(S.ASSIGNED, rider=rider)

        await service.cancel_delivery(delivery.id, "restaurant closed early")

        db_session.expire_all()
        delivery = db_session.get(Delivery, delivery.id)
        assert delivery.status == S.CANCELLED
        assert delivery.failure_reason == "restaurant closed early"
        assert delivery.order.status == OrderStatus.CANCELLED
        assert_loads_consistent(db_session)

    @pytest.mark.asyncio
    async def test_complete_self_fulfilled(self, db_session, service, make_delivery, changes):
        delivery = make_delivery(S.CONFIRMED, provider=None)

        await service.complete_delivery(delivery.id)

        db_session.expire_all()
        assert db_session.get(Delivery, delivery.id).status == S.DELIVERED
        assert changes[-1].to_status == "delivered"

    @pytest.mark.asyncio
    async def test_fail_delivery_clears_tasks(self, db_session, service, make_delivery, rider):
        delivery = make_delivery(S.DISPATCHED, rider=rider)
        service.machine.schedule_task(delivery, TaskKind.POLL_DELIVERY)
        db_session.commit()

        await service.fail_delivery(delivery.id, "courier unreachable")

        assert db_session.scalar(select(func.count(ScheduledTask.id))) == 0
        assert_loads_consistent(db_session)
