"""Event and task handlers that drive the introduction sagas."""

from introflow.events.registry import HandlerContext, HandlerRegistry
from introflow.sagas.completion import CompletionCoordinator
from introflow.sagas.connection_requests import ConnectionRequestSaga
from introflow.sagas.expiry import sweep_expired
from introflow.sagas.offers import EXPIRY_CHECK_TASK, REMINDER_TASK, OfferSaga
from introflow.sagas.opportunities import OpportunitySaga
from introflow.tasks.registry import TaskContext, TaskHandlerRegistry, TaskResult

# =============================================================================
# Event handlers
# =============================================================================


async def on_opportunity_accepted(ctx: HandlerContext) -> None:
    await OpportunitySaga(ctx.session, ctx.config).accept(ctx.payload.opportunity_id, ctx.payload.response)


async def on_opportunity_declined(ctx: HandlerContext) -> None:
    await OpportunitySaga(ctx.session, ctx.config).decline(ctx.payload.opportunity_id, ctx.payload.response)


async def on_opportunity_completed(ctx: HandlerContext) -> None:
    await CompletionCoordinator(ctx.session, ctx.config).complete_opportunity(ctx.payload.opportunity_id)


async def on_opportunity_cancelled(ctx: HandlerContext) -> None:
    await OpportunitySaga(ctx.session, ctx.config).close(ctx.payload.opportunity_id, "cancelled", ctx.payload.reason)


async def on_request_accepted(ctx: HandlerContext) -> None:
    await ConnectionRequestSaga(ctx.session, ctx.config).accept(ctx.payload.request_id, ctx.payload.response)


async def on_request_declined(ctx: HandlerContext) -> None:
    await ConnectionRequestSaga(ctx.session, ctx.config).decline(ctx.payload.request_id, ctx.payload.response)


async def on_request_completed(ctx: HandlerContext) -> None:
    await CompletionCoordinator(ctx.session, ctx.config).complete_connection_request(ctx.payload.request_id)


async def on_request_cancelled(ctx: HandlerContext) -> None:
    await ConnectionRequestSaga(ctx.session, ctx.config).close(ctx.payload.request_id, "cancelled", ctx.payload.reason)


async def on_offer_accepted(ctx: HandlerContext) -> None:
    await OfferSaga(ctx.session, ctx.config).accept(ctx.payload.offer_id, ctx.payload.response)


async def on_offer_declined(ctx: HandlerContext) -> None:
    await OfferSaga(ctx.session, ctx.config).decline(ctx.payload.offer_id, ctx.payload.response)


async def on_offer_confirmed(ctx: HandlerContext) -> None:
    await CompletionCoordinator(ctx.session, ctx.config).complete_offer(
        ctx.payload.offer_id, ctx.payload.confirmation
    )


async def on_offer_cancelled(ctx: HandlerContext) -> None:
    """Cancel an offer, along with its pending reminder and expiry check."""
    await OfferSaga(ctx.session, ctx.config).close(ctx.payload.offer_id, "cancelled", ctx.payload.reason)


# =============================================================================
# Task handlers
# =============================================================================


async def run_offer_reminder(ctx: TaskContext) -> TaskResult:
    sent = await OfferSaga(ctx.session, ctx.config).send_confirmation_reminder(ctx.payload.offer_id)
    return TaskResult.ok(reminder_sent=sent)


async def run_offer_expiry_check(ctx: TaskContext) -> TaskResult:
    expired = await OfferSaga(ctx.session, ctx.config).expire_unconfirmed(ctx.payload.offer_id)
    return TaskResult.ok(expired=expired)


async def run_expiry_sweep(ctx: TaskContext) -> TaskResult:
    counts = await sweep_expired(ctx.session, ctx.config)
    return TaskResult.ok(**counts)


def register_saga_handlers(events: HandlerRegistry, tasks: TaskHandlerRegistry) -> None:
    """Subscribe the saga state machines to their events and tasks."""
    events.register("intro.opportunity_accepted", on_opportunity_accepted, "Accept opportunity")
    events.register("intro.opportunity_declined", on_opportunity_declined, "Decline opportunity")
    events.register("intro.opportunity_completed", on_opportunity_completed, "Complete opportunity")
    events.register("intro.opportunity_cancelled", on_opportunity_cancelled, "Cancel opportunity")
    events.register("connection.request_accepted", on_request_accepted, "Accept connection request")
    events.register("connection.request_declined", on_request_declined, "Decline connection request")
    events.register("connection.request_completed", on_request_completed, "Complete connection request")
    events.register("connection.request_cancelled", on_request_cancelled, "Cancel connection request")
    events.register("intro.offer_accepted", on_offer_accepted, "Introducee accepts offer")
    events.register("intro.offer_declined", on_offer_declined, "Introducee declines offer")
    events.register("intro.offer_confirmed", on_offer_confirmed, "Connector confirms offer")
    events.register("intro.offer_cancelled", on_offer_cancelled, "Cancel offer")

    tasks.register(REMINDER_TASK, run_offer_reminder, "Remind connector to confirm an offer")
    tasks.register(EXPIRY_CHECK_TASK, run_offer_expiry_check, "Expire an unconfirmed offer")
    tasks.register("saga_expiry_sweep", run_expiry_sweep, "Expire sagas past their expiry time")
