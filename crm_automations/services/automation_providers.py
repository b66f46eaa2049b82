"""
Collaborators used by automation actions: notifications, email, webhooks,
sequence enrollment and AI research.

Defaults write to the CRM tables (in-app notifications, email drafts,
enrollments, research jobs). SMTP and the research service are used when
configured; otherwise the table-backed providers are selected and the choice
is logged at startup.
"""

from __future__ import annotations

import datetime
import hashlib
import hmac
import json
import logging
import re
import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Optional

import requests
from sqlalchemy.orm import Session

from ..core.config import Settings, parse_backoff_schedule, settings
from ..core.errors import ActionError, RetryableActionError
from ..models import EmailDraft, EmailTemplate, Notification, ResearchJob, Sequence, SequenceEnrollment
from .conditions import get_field_value

logger = logging.getLogger("automation_providers")

SIGNATURE_HEADER = "X-Automation-Signature"
TIMESTAMP_HEADER = "X-Automation-Timestamp"

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def render_template(text: Optional[str], values: dict[str, Any]) -> Optional[str]:
    """Replace ``{{ field }}`` placeholders; unknown fields render empty."""
    if text is None:
        return None

    def _sub(match: re.Match) -> str:
        value = get_field_value(values, match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, text)


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + b"." + body, hashlib.sha256)
    return f"sha256={digest.hexdigest()}"


def verify_signature(secret: str, timestamp: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, timestamp, body), signature or "")


# --- Notifications ---------------------------------------------------------------


class Notifier:
    def notify(
        self,
        db: Session,
        *,
        project_id: str,
        user_id: str,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> Optional[str]:
        raise NotImplementedError


class InAppNotifier(Notifier):
    def notify(
        self,
        db: Session,
        *,
        project_id: str,
        user_id: str,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> Optional[str]:
        row = Notification(
            project_id=project_id,
            user_id=user_id,
            type="automation",
            title=title[:255],
            message=message,
            action_url=action_url,
            priority="normal",
        )
        db.add(row)
        db.flush()
        return row.id


# --- Email -----------------------------------------------------------------------


class EmailSender:
    def send(
        self,
        db: Session,
        *,
        project_id: str,
        template: EmailTemplate,
        to_email: str,
        values: dict[str, Any],
        meta: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        raise NotImplementedError


class DraftEmailSender(EmailSender):
    """Queues a rendered draft for manual sending."""

    status = "draft"

    def _record(
        self,
        db: Session,
        *,
        project_id: str,
        template: EmailTemplate,
        to_email: str,
        values: dict[str, Any],
        meta: dict[str, Any],
    ) -> EmailDraft:
        draft = EmailDraft(
            project_id=project_id,
            template_id=template.id,
            to_email=to_email,
            subject=render_template(template.subject, values) or "",
            body_html=render_template(template.body_html, values),
            body_text=render_template(template.body_text, values),
            status=self.status,
            meta=meta,
        )
        if self.status == "sent":
            draft.sent_at = datetime.datetime.now(datetime.timezone.utc)
        db.add(draft)
        db.flush()
        return draft

    def send(
        self,
        db: Session,
        *,
        project_id: str,
        template: EmailTemplate,
        to_email: str,
        values: dict[str, Any],
        meta: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        draft = self._record(db, project_id=project_id, template=template, to_email=to_email, values=values, meta=meta)
        logger.info("Email draft queued draft_id=%s to=%s template_id=%s", draft.id, to_email, template.id)
        return {"draft_id": draft.id, "to": to_email, "delivery": "draft"}


class SmtpEmailSender(DraftEmailSender):
    status = "sent"

    def __init__(self, cfg: Settings) -> None:
        if not cfg.smtp_host:
            raise RuntimeError("SMTP_HOST is not configured")
        self.host = cfg.smtp_host
        self.port = int(cfg.smtp_port or 587)
        self.user = cfg.smtp_user
        self.password = cfg.smtp_password
        self.sender = cfg.smtp_from or self.user or "automations@localhost"
        self.starttls = cfg.smtp_starttls if cfg.smtp_starttls is not None else self.port != 1025
        logger.info("SMTP config loaded host=%s port=%s starttls=%s", self.host, self.port, self.starttls)

    def _deliver(self, to_email: str, subject: str, html: Optional[str], text: Optional[str], timeout: float) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_email
        msg.set_content(text or "")
        if html:
            msg.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=timeout) as server:
                server.ehlo()
                if self.starttls:
                    server.starttls()
                    server.ehlo()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise RetryableActionError(f"SMTP send failed: {exc}") from exc

    def send(
        self,
        db: Session,
        *,
        project_id: str,
        template: EmailTemplate,
        to_email: str,
        values: dict[str, Any],
        meta: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        self._deliver(
            to_email,
            render_template(template.subject, values) or "",
            render_template(template.body_html, values),
            render_template(template.body_text, values),
            timeout,
        )
        draft = self._record(db, project_id=project_id, template=template, to_email=to_email, values=values, meta=meta)
        return {"draft_id": draft.id, "to": to_email, "delivery": "smtp"}


# --- Webhooks --------------------------------------------------------------------


class WebhookTransport:
    def post(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float,
    ) -> dict[str, Any]:
        raise NotImplementedError


class HttpWebhookTransport(WebhookTransport):
    def __init__(self, default_secret: Optional[str] = None, connect_timeout: float = 5.0) -> None:
        self.default_secret = default_secret
        self.connect_timeout = connect_timeout

    def post(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float,
    ) -> dict[str, Any]:
        body = json.dumps(payload, default=str, separators=(",", ":")).encode("utf-8")
        timestamp = str(int(time.time()))
        request_headers = dict(headers or {})
        request_headers["Content-Type"] = "application/json"
        request_headers[TIMESTAMP_HEADER] = timestamp
        signing_secret = secret or self.default_secret
        if signing_secret:
            request_headers[SIGNATURE_HEADER] = sign_payload(signing_secret, timestamp, body)
        try:
            response = requests.post(
                url,
                data=body,
                headers=request_headers,
                timeout=(min(self.connect_timeout, timeout), timeout),
                allow_redirects=False,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise RetryableActionError(f"Webhook request failed: {exc}") from exc
        except requests.RequestException as exc:
            raise ActionError(f"Webhook request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableActionError(f"HTTP {response.status_code}")
        if response.status_code // 100 != 2:
            raise ActionError(f"HTTP {response.status_code}")
        return {"status": response.status_code, "url": url}


# --- Sequences -------------------------------------------------------------------


class SequenceEnroller:
    def enroll(
        self,
        db: Session,
        *,
        project_id: str,
        sequence_id: str,
        person_id: str,
        created_by: Optional[str] = None,
    ) -> str:
        raise NotImplementedError


class DbSequenceEnroller(SequenceEnroller):
    def enroll(
        self,
        db: Session,
        *,
        project_id: str,
        sequence_id: str,
        person_id: str,
        created_by: Optional[str] = None,
    ) -> str:
        sequence = (
            db.query(Sequence)
            .filter(Sequence.id == sequence_id, Sequence.project_id == project_id)
            .first()
        )
        if sequence is None:
            raise ActionError("Sequence not found in this project")
        existing = (
            db.query(SequenceEnrollment)
            .filter(
                SequenceEnrollment.sequence_id == sequence_id,
                SequenceEnrollment.person_id == person_id,
                SequenceEnrollment.status.in_(["active", "paused"]),
            )
            .first()
        )
        if existing is not None:
            raise ActionError(f"Person {person_id} is already enrolled in sequence {sequence_id}")
        enrollment = SequenceEnrollment(
            sequence_id=sequence_id,
            person_id=person_id,
            status="active",
            current_step=1,
            next_send_at=datetime.datetime.now(datetime.timezone.utc),
            created_by=created_by,
        )
        db.add(enrollment)
        db.flush()
        return enrollment.id


# --- Research --------------------------------------------------------------------


class ResearchRequester:
    def request(
        self,
        db: Session,
        *,
        project_id: str,
        entity_type: str,
        entity_id: str,
        research_type: Optional[str],
        prompt: Optional[str],
        meta: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        raise NotImplementedError


class DbResearchRequester(ResearchRequester):
    """Queues a pending research job for the generation worker."""

    def _create_job(
        self,
        db: Session,
        *,
        project_id: str,
        entity_type: str,
        entity_id: str,
        research_type: Optional[str],
        prompt: Optional[str],
        meta: dict[str, Any],
    ) -> ResearchJob:
        job = ResearchJob(
            project_id=project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            status="pending",
            research_type=research_type,
            prompt=prompt,
            meta=meta,
        )
        db.add(job)
        db.flush()
        return job

    def request(
        self,
        db: Session,
        *,
        project_id: str,
        entity_type: str,
        entity_id: str,
        research_type: Optional[str],
        prompt: Optional[str],
        meta: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        job = self._create_job(
            db,
            project_id=project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            research_type=research_type,
            prompt=prompt,
            meta=meta,
        )
        return {"research_job_id": job.id}


class HttpResearchRequester(DbResearchRequester):
    def __init__(self, base_url: str, token: Optional[str] = None) -> None:
        self.url = base_url.rstrip("/") + "/research"
        self.token = token

    def request(
        self,
        db: Session,
        *,
        project_id: str,
        entity_type: str,
        entity_id: str,
        research_type: Optional[str],
        prompt: Optional[str],
        meta: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        job = self._create_job(
            db,
            project_id=project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            research_type=research_type,
            prompt=prompt,
            meta=meta,
        )
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = {
            "job_id": job.id,
            "project_id": project_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "research_type": research_type,
            "prompt": prompt,
        }
        try:
            response = requests.post(self.url, json=body, headers=headers, timeout=(5, timeout))
        except requests.RequestException as exc:
            raise ActionError(f"Research request failed: {exc}") from exc
        if response.status_code // 100 != 2:
            raise ActionError(f"Research service returned HTTP {response.status_code}")
        external_id: Optional[str] = None
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("id") is not None:
                external_id = str(data["id"])
        except ValueError:
            external_id = None
        job.status = "queued"
        job.external_id = external_id
        db.add(job)
        db.flush()
        return {"research_job_id": job.id, "external_id": external_id}


# --- Provider set ----------------------------------------------------------------


@dataclass
class ProviderSet:
    notifier: Notifier
    email: EmailSender
    webhook: WebhookTransport
    sequences: SequenceEnroller
    research: ResearchRequester


def build_providers(cfg: Optional[Settings] = None) -> ProviderSet:
    cfg = cfg or settings

    if cfg.smtp_host:
        try:
            email: EmailSender = SmtpEmailSender(cfg)
        except Exception as exc:
            logger.error("SMTP email disabled: %s", exc)
            email = DraftEmailSender()
    else:
        logger.info("SMTP_HOST missing; using DraftEmailSender.")
        email = DraftEmailSender()

    if cfg.research_service_url:
        research: ResearchRequester = HttpResearchRequester(cfg.research_service_url, cfg.research_service_token)
    else:
        research = DbResearchRequester()

    providers = ProviderSet(
        notifier=InAppNotifier(),
        email=email,
        webhook=HttpWebhookTransport(default_secret=cfg.webhook_signing_secret),
        sequences=DbSequenceEnroller(),
        research=research,
    )
    logger.info(
        "Providers selected: notifier=%s email=%s webhook=%s sequences=%s research=%s",
        type(providers.notifier).__name__,
        type(providers.email).__name__,
        type(providers.webhook).__name__,
        type(providers.sequences).__name__,
        type(providers.research).__name__,
    )
    return providers


def backoff_seconds(attempt: int, schedule: Optional[list[float]] = None) -> float:
    schedule = schedule if schedule is not None else parse_backoff_schedule(settings.automation_action_backoff_sec)
    if not schedule:
        return 0.0
    idx = min(max(attempt - 1, 0), len(schedule) - 1)
    return schedule[idx]
