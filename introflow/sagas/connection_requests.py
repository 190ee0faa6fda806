"""Connection request saga: a third party asks to be introduced to a member."""

import logging
from datetime import datetime, timedelta

from introflow.core.timezone import utc_now
from introflow.db.models import ConnectionRequest, ConnectionRequestStatus
from introflow.db.repositories.saga_repo import ConnectionRequestRepository
from introflow.sagas.base import SagaService

logger = logging.getLogger(__name__)

_S = ConnectionRequestStatus


class ConnectionRequestSaga(SagaService[ConnectionRequest]):
    """open -> accepted | declined | expired | cancelled; accepted -> completed | cancelled | expired."""

    variant = "connection_request"
    item_type = "connection_request"
    repository = ConnectionRequestRepository
    transitions = {
        _S.OPEN.value: frozenset({_S.ACCEPTED.value, _S.DECLINED.value, _S.EXPIRED.value, _S.CANCELLED.value}),
        _S.ACCEPTED.value: frozenset({_S.COMPLETED.value, _S.CANCELLED.value, _S.EXPIRED.value}),
    }

    async def create(
        self,
        introducee_user_id: str,
        subject_name: str,
        subject_company: str | None = None,
        subject_title: str | None = None,
        subject_context: str | None = None,
        requestor_user_id: str | None = None,
        vouched_by_user_ids: list[str] | None = None,
        requestor_credits_spent: int = 0,
        bounty_credits: int | None = None,
        expires_at: datetime | None = None,
    ) -> ConnectionRequest:
        """Open a request and surface it in the introducee's priorities."""
        sagas = self.config.sagas
        request = ConnectionRequest(
            introducee_user_id=introducee_user_id,
            requestor_user_id=requestor_user_id,
            subject_name=subject_name,
            subject_company=subject_company,
            subject_title=subject_title,
            subject_context=subject_context,
            vouched_by_user_ids=vouched_by_user_ids or [],
            requestor_credits_spent=requestor_credits_spent,
            bounty_credits=sagas.connection_request_bounty if bounty_credits is None else bounty_credits,
            status=_S.OPEN.value,
            expires_at=expires_at or utc_now() + timedelta(days=sagas.connection_request_expiry_days),
        )
        self.session.add(request)
        await self.session.flush()

        await self.priorities.upsert_priority(
            introducee_user_id,
            self.item_type,
            request.id,
            await self.scorer.score_connection_request(request),
            metadata={"vouchers": len(request.vouched_by_user_ids)},
            summary=f"{subject_name} would like to connect",
            primary_name=subject_name,
            secondary_name=subject_company,
            context=subject_context,
            expires_at=request.expires_at,
        )
        logger.info(f"Opened connection request {request.id} for introducee {introducee_user_id}")
        return request

    async def accept(self, request_id: str, response: str | None = None) -> ConnectionRequest:
        return await self.transition(request_id, _S.ACCEPTED.value, introducee_response=response)

    async def decline(self, request_id: str, response: str | None = None) -> ConnectionRequest:
        request = await self.transition(request_id, _S.DECLINED.value, introducee_response=response)
        await self.priorities.action_for_item(self.item_type, request.id)
        return request
