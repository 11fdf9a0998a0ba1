"""Service-request state machine.

Each operation performs a guarded write on the request and appends its audit
entry inside one store transaction. Notifications go out after commit and
are best effort: a failed notification is logged and never undoes a
committed transition.

Transition audit entries carry the idempotency key ``<request_id>:<status>``
and the matching notifications reuse it as their dedupe key, so a caller
retrying an operation that already went through gets the current request
back with no second audit entry and no second notification.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from app.models import ServiceRequest, ServiceRequestCreate
from app.services.conversations import ConversationMatcher
from app.services.database import Database
from app.services.directory import UserDirectory
from app.services.errors import InvalidTransitionError, StoreError, StorePermissionError
from app.services.notification_store import NotificationFanout
from app.services.project_updates import ProjectUpdateLog
from app.services.request_store import REQUEST_TERMINAL_STATUSES, RequestStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "Pending": {"Accepted", "Rejected", "Cancelled"},
    "Accepted": {"InProgress", "Completed", "Cancelled"},
    "InProgress": {"Completed", "Cancelled"},
}

TYPE_LABELS = {
    "construction": "Construction request",
    "renovation": "Renovation request",
    "rental": "Rental booking",
    "buySell": "Buy/Sell request",
}

REQUEST_LINKS = {
    "construction": "/construction/my-requests/{id}",
    "renovation": "/renovation/my-renovations/{id}",
    "rental": "/rental/booking/{id}",
    "buySell": "/buy-sell/listing/{id}",
}

PROVIDER_PANEL_LINKS = {
    "construction": "/provider-construction-panel",
    "renovation": "/provider-renovation-panel",
    "rental": "/dashboard",
    "buySell": "/dashboard",
}

Authorizer = Callable[[ServiceRequest, str], None]


def transition_sources(to_status: str) -> List[str]:
    return sorted(source for source, targets in ALLOWED_TRANSITIONS.items() if to_status in targets)


def transition_key(request_id: str, status: str) -> str:
    return f"{request_id}:{status}"


def request_link(request: ServiceRequest) -> str:
    return REQUEST_LINKS.get(request.request_type, "/dashboard/{id}").format(id=request.id)


def _label(request: ServiceRequest) -> str:
    return TYPE_LABELS.get(request.request_type, "Request")


@dataclass
class RequestLifecycle:
    db: Database
    requests: RequestStore
    updates: ProjectUpdateLog
    notifications: NotificationFanout
    conversations: ConversationMatcher
    directory: UserDirectory

    def _notify(
        self,
        recipient_id: Optional[str],
        title: str,
        body: str,
        kind: str,
        link: Optional[str],
        dedupe_key: Optional[str] = None,
    ) -> None:
        if not recipient_id:
            return
        try:
            self.notifications.notify(recipient_id, title, body, kind, link, dedupe_key=dedupe_key)
        except StoreError:
            logger.exception("Notification to %s failed after commit (%s)", recipient_id, title)

    def _is_replay(self, conn: sqlite3.Connection, request: ServiceRequest, to_status: str, actor_id: str) -> bool:
        if request.status != to_status:
            return False
        entry = self.updates.find_by_key(transition_key(request.id, to_status), conn=conn)
        return entry is not None and entry.actor_id == actor_id

    def _transition(
        self,
        request_id: str,
        actor_id: str,
        to_status: str,
        note: str,
        authorize: Authorizer,
    ) -> Tuple[ServiceRequest, bool]:
        with self.db.session() as conn:
            request = self.requests.get(request_id, conn=conn)
            if self._is_replay(conn, request, to_status, actor_id):
                return request, True
            if to_status not in ALLOWED_TRANSITIONS.get(request.status, set()):
                raise InvalidTransitionError(f"Invalid status transition: {request.status} -> {to_status}")
            authorize(request, actor_id)
            request = self.requests.transition(request_id, transition_sources(to_status), to_status, conn=conn)
            self.updates.append(
                request_id,
                to_status,
                actor_id,
                note,
                idempotency_key=transition_key(request_id, to_status),
                conn=conn,
            )
        logger.info("request_transition id=%s status=%s actor=%s", request_id, to_status, actor_id)
        return request, False

    @staticmethod
    def _authorize_responding_provider(request: ServiceRequest, actor_id: str) -> None:
        if actor_id == request.client_id:
            raise StorePermissionError("Clients cannot respond to their own request")
        if request.requested_provider_id and request.requested_provider_id != actor_id:
            raise StorePermissionError("Request is addressed to a different provider")

    @staticmethod
    def _authorize_assigned_provider(request: ServiceRequest, actor_id: str) -> None:
        if not request.provider_id or request.provider_id != actor_id:
            raise StorePermissionError("Only the assigned provider can update this request")

    @staticmethod
    def _authorize_party(request: ServiceRequest, actor_id: str) -> None:
        if actor_id not in {request.client_id, request.provider_id}:
            raise StorePermissionError("Only the client or the assigned provider can cancel this request")

    def create_request(self, payload: ServiceRequestCreate) -> ServiceRequest:
        with self.db.session() as conn:
            request = self.requests.create(payload, conn=conn)
            self.updates.append(
                request.id,
                "Pending",
                request.client_id,
                "Request submitted",
                idempotency_key=transition_key(request.id, "Pending"),
                conn=conn,
            )

        label = _label(request)
        self._notify(
            request.client_id,
            f"{label} Submitted",
            f"Your {label.lower()} has been submitted successfully. We'll notify you when a provider responds.",
            "service-request",
            request_link(request),
            dedupe_key=transition_key(request.id, "Pending"),
        )
        panel = PROVIDER_PANEL_LINKS.get(request.request_type, "/dashboard")
        if request.requested_provider_id:
            self._notify(
                request.requested_provider_id,
                f"New {label}",
                f"You have received a new {label.lower()}. Check your dashboard for details.",
                "service-request",
                panel,
                dedupe_key=f"{request.id}:offered",
            )
        else:
            try:
                provider_ids = [
                    entry.user_id
                    for entry in self.directory.list_by_role("provider", service_type=request.request_type)
                    if entry.user_id != request.client_id
                ]
                if provider_ids:
                    self.notifications.notify_many(
                        provider_ids,
                        f"New {label} Available",
                        f"A new {label.lower()} is available. Check available projects.",
                        "service-request",
                        panel,
                        dedupe_key=f"{request.id}:offered",
                    )
            except StoreError:
                logger.exception("Provider fan-out failed after commit for request %s", request.id)
        return request

    def accept(self, request_id: str, provider_id: str) -> ServiceRequest:
        key = transition_key(request_id, "Accepted")
        with self.db.session() as conn:
            request = self.requests.get(request_id, conn=conn)
            self._authorize_responding_provider(request, provider_id)
            replayed = self._is_replay(conn, request, "Accepted", provider_id) and request.provider_id == provider_id
            if not replayed:
                request = self.requests.claim(request_id, provider_id, conn=conn)
                self.updates.append(request_id, "Accepted", provider_id, "Request accepted", idempotency_key=key, conn=conn)
        if not replayed:
            logger.info("request_transition id=%s status=Accepted actor=%s", request_id, provider_id)

        if not request.chat_id:
            try:
                conversation = self.conversations.find_or_create(request.client_id, provider_id)
                request = self.requests.attach_chat(request_id, conversation.id)
            except StoreError:
                logger.exception("Chat creation failed for accepted request %s", request_id)

        label = _label(request)
        link = f"/chats?chatId={request.chat_id}" if request.chat_id else request_link(request)
        self._notify(
            request.client_id,
            f"{label} Accepted",
            f"Your {label.lower()} has been accepted! You can now chat with the provider.",
            "success",
            link,
            dedupe_key=key,
        )
        return request

    def reject(self, request_id: str, provider_id: str, note: str = "") -> ServiceRequest:
        request, _ = self._transition(
            request_id,
            provider_id,
            "Rejected",
            note or "Request rejected",
            self._authorize_responding_provider,
        )
        label = _label(request)
        self._notify(
            request.client_id,
            f"{label} Rejected",
            f"Your {label.lower()} has been rejected.",
            "info",
            request_link(request),
            dedupe_key=transition_key(request_id, "Rejected"),
        )
        return request

    def submit_quote(self, request_id: str, provider_id: str, amount: float) -> ServiceRequest:
        with self.db.session() as conn:
            request = self.requests.get(request_id, conn=conn)
            if request.status in REQUEST_TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Cannot quote a request in status {request.status}")
            if request.provider_id:
                self._authorize_assigned_provider(request, provider_id)
            else:
                self._authorize_responding_provider(request, provider_id)
            request = self.requests.set_quote(request_id, provider_id, amount, conn=conn)
            self.updates.append(request_id, request.status, provider_id, f"Quote submitted: {amount:.2f}", conn=conn)
        logger.info("request_quoted id=%s provider=%s amount=%.2f", request_id, provider_id, amount)

        label = _label(request)
        self._notify(
            request.client_id,
            "Quote Received",
            f"A provider has submitted a quote for your {label.lower()}: ${amount:,.2f}",
            "info",
            request_link(request),
        )
        return request

    def record_progress(self, request_id: str, actor_id: str, note: str) -> ServiceRequest:
        with self.db.session() as conn:
            request = self.requests.get(request_id, conn=conn)
            if request.status not in {"Accepted", "InProgress"}:
                raise InvalidTransitionError(f"Cannot record progress on a request in status {request.status}")
            self._authorize_assigned_provider(request, actor_id)
            request = self.requests.add_progress_note(request_id, actor_id, note, conn=conn)
            if request.status == "Accepted":
                request = self.requests.transition(request_id, ["Accepted"], "InProgress", conn=conn)
                self.updates.append(
                    request_id,
                    "InProgress",
                    actor_id,
                    note,
                    idempotency_key=transition_key(request_id, "InProgress"),
                    conn=conn,
                )
            else:
                self.updates.append(request_id, request.status, actor_id, note, conn=conn)
        position = len(request.progress_notes)
        logger.info("request_progress id=%s notes=%d status=%s", request_id, position, request.status)

        label = _label(request)
        self._notify(
            request.client_id,
            "Project Update",
            f"Your {label.lower()} is in progress. {note.strip()}",
            "status-update",
            request_link(request),
            dedupe_key=f"{request_id}:progress:{position}",
        )
        return request

    def complete(self, request_id: str, actor_id: str, note: str = "") -> ServiceRequest:
        request, _ = self._transition(
            request_id,
            actor_id,
            "Completed",
            note or "Project completed",
            self._authorize_assigned_provider,
        )
        label = _label(request)
        self._notify(
            request.client_id,
            f"{label} Completed",
            f"Your {label.lower()} has been marked as completed.",
            "success",
            request_link(request),
            dedupe_key=transition_key(request_id, "Completed"),
        )
        return request

    def cancel(self, request_id: str, actor_id: str, note: str = "") -> ServiceRequest:
        request, _ = self._transition(
            request_id,
            actor_id,
            "Cancelled",
            note or "Request cancelled",
            self._authorize_party,
        )
        label = _label(request)
        for recipient_id in (request.client_id, request.provider_id):
            if recipient_id and recipient_id != actor_id:
                self._notify(
                    recipient_id,
                    f"{label} Cancelled",
                    f"The {label.lower()} has been cancelled.",
                    "warning",
                    request_link(request),
                    dedupe_key=transition_key(request_id, "Cancelled"),
                )
        return request
