"""External collaborators the engine calls while dispatching steps.

Role resolution, approval bookkeeping and integration calls belong to other
systems. The engine depends only on the protocols below; the default
implementations are enough for tests and single-process deployments.
"""

from __future__ import annotations

import itertools
import logging
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field

from .contracts import ExternalService, StepData, WorkflowContext, utcnow
from .exceptions import ExternalServiceFailure

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    async def resolve_assignee(self, role: Optional[str], context: WorkflowContext) -> str:
        """Return the user id that should receive work for ``role``."""

    async def find_approvers(self, roles: Sequence[str]) -> List[str]:
        """Return the user ids allowed to approve for ``roles``."""


class StaticUserDirectory(UserDirectory):
    """Role membership from a fixed mapping.

    Assignments rotate through a role's members. Roles without members
    resolve to a ``role:<name>`` placeholder that a downstream task service
    can fan out.
    """

    def __init__(self, members: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        self._members: Dict[str, List[str]] = {
            role: list(users) for role, users in (members or {}).items()
        }
        self._cursors: Dict[str, Iterator[str]] = {}

    async def resolve_assignee(self, role: Optional[str], context: WorkflowContext) -> str:
        if not role:
            return context.user_id
        users = self._members.get(role)
        if not users:
            return f"role:{role}"
        cursor = self._cursors.setdefault(role, itertools.cycle(users))
        return next(cursor)

    async def find_approvers(self, roles: Sequence[str]) -> List[str]:
        approvers: List[str] = []
        for role in roles:
            for user in self._members.get(role) or [f"role:{role}"]:
                if user not in approvers:
                    approvers.append(user)
        return approvers


class ApprovalRequest(BaseModel):
    execution_id: str
    step_id: str
    requester_id: str
    approver_id: str
    tenant_id: Optional[str] = None
    sla_hours: float
    state: str = "pending"
    requested_at: datetime = Field(default_factory=utcnow)


class ApprovalService(Protocol):
    async def request_approval(self, request: ApprovalRequest) -> None:
        """Record an approval request for an approver."""


class InMemoryApprovalService(ApprovalService):
    def __init__(self) -> None:
        self.requests: List[ApprovalRequest] = []

    async def request_approval(self, request: ApprovalRequest) -> None:
        self.requests.append(request)
        logger.debug(
            f"Approval requested from {request.approver_id} for "
            f"execution_id={request.execution_id} step={request.step_id}"
        )


class IntegrationClient(Protocol):
    async def call(self, service: ExternalService, data: StepData) -> Dict[str, Any]:
        """Call ``service`` with ``data`` and return its result.

        Raises:
            ExternalServiceFailure: If the call fails for any reason.
        """


class HttpIntegrationClient(IntegrationClient):
    """Call external validation services over HTTP with httpx."""

    def __init__(
        self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout
        self._client = client

    async def call(self, service: ExternalService, data: StepData) -> Dict[str, Any]:
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            if service.method == "GET":
                params = {k: str(v) for k, v in data.items() if not isinstance(v, (dict, list))}
                response = await client.get(
                    service.endpoint, params=params, headers=service.headers
                )
            else:
                response = await client.post(
                    service.endpoint, json=data, headers=service.headers
                )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceFailure(
                f"External service {service.endpoint} failed: {e}"
            ) from e
        finally:
            if self._client is None:
                await client.aclose()

        try:
            body = response.json()
        except ValueError:
            body = response.text
        return body if isinstance(body, dict) else {"result": body}

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
