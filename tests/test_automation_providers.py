import smtplib
import uuid

import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from crm_automations.core.config import Settings
from crm_automations.core.errors import ActionError, RetryableActionError
from crm_automations.models import Base, EmailDraft, EmailTemplate, ResearchJob
from crm_automations.services import automation_providers
from crm_automations.services.automation_providers import (
    DbResearchRequester,
    DraftEmailSender,
    HttpResearchRequester,
    HttpWebhookTransport,
    SmtpEmailSender,
    backoff_seconds,
    build_providers,
    render_template,
)

PROJECT_ID = str(uuid.uuid4())


def _make_session():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    return SessionLocal()


def _template(db):
    template = EmailTemplate(
        project_id=PROJECT_ID,
        name="Intro",
        subject="Hello {{ first_name }}",
        body_text="About {{ custom_fields.product }}{{ missing }}",
    )
    db.add(template)
    db.commit()
    return template


def test_build_providers_without_config_uses_local_providers():
    providers = build_providers(Settings(smtp_host=None, research_service_url=None, webhook_signing_secret="s3cret"))

    assert isinstance(providers.email, DraftEmailSender)
    assert not isinstance(providers.email, SmtpEmailSender)
    assert isinstance(providers.research, DbResearchRequester)
    assert not isinstance(providers.research, HttpResearchRequester)
    assert isinstance(providers.webhook, HttpWebhookTransport)
    assert providers.webhook.default_secret == "s3cret"


def test_build_providers_with_config_uses_remote_providers():
    providers = build_providers(
        Settings(smtp_host="smtp.example.com", smtp_port=2525, research_service_url="https://research.example.com/")
    )

    assert isinstance(providers.email, SmtpEmailSender)
    assert providers.email.port == 2525
    assert isinstance(providers.research, HttpResearchRequester)
    assert providers.research.url == "https://research.example.com/research"


def test_backoff_schedule_clamps_to_last_step():
    assert backoff_seconds(1, [1.0, 5.0, 15.0]) == 1.0
    assert backoff_seconds(3, [1.0, 5.0, 15.0]) == 15.0
    assert backoff_seconds(9, [1.0, 5.0, 15.0]) == 15.0
    assert backoff_seconds(1, []) == 0.0


def test_render_template_fills_placeholders():
    values = {"first_name": "Ada", "custom_fields": {"product": "Widgets"}}

    assert render_template("Hi {{first_name}}, re {{ custom_fields.product }}", values) == "Hi Ada, re Widgets"
    assert render_template("{{ nope }}!", values) == "!"
    assert render_template(None, values) is None


def test_draft_sender_records_rendered_draft():
    db = _make_session()
    template = _template(db)

    result = DraftEmailSender().send(
        db,
        project_id=PROJECT_ID,
        template=template,
        to_email="ada@example.com",
        values={"first_name": "Ada", "custom_fields": {"product": "Widgets"}},
        meta={"automation_id": "a-1"},
        timeout=5,
    )
    db.commit()

    draft = db.query(EmailDraft).one()
    assert result == {"draft_id": draft.id, "to": "ada@example.com", "delivery": "draft"}
    assert draft.subject == "Hello Ada"
    assert draft.body_text == "About Widgets"
    assert draft.status == "draft"
    assert draft.meta == {"automation_id": "a-1"}


def test_smtp_failures_are_retryable(monkeypatch):
    db = _make_session()
    template = _template(db)

    class BrokenSMTP:
        def __init__(self, host, port, timeout=None):
            raise smtplib.SMTPConnectError(421, b"try later")

    monkeypatch.setattr(automation_providers.smtplib, "SMTP", BrokenSMTP)
    sender = SmtpEmailSender(Settings(smtp_host="smtp.example.com", smtp_port=587))

    try:
        sender.send(
            db,
            project_id=PROJECT_ID,
            template=template,
            to_email="ada@example.com",
            values={},
            meta={},
            timeout=5,
        )
        assert False, "Expected RetryableActionError"
    except RetryableActionError as exc:
        assert "SMTP send failed" in str(exc)
    assert db.query(EmailDraft).count() == 0


def test_smtp_starttls_setting_overrides_port_default(monkeypatch):
    sessions = []

    class RecordingSMTP:
        def __init__(self, host, port, timeout=None):
            self.calls = []
            sessions.append(self)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def ehlo(self):
            self.calls.append("ehlo")

        def starttls(self):
            self.calls.append("starttls")

        def send_message(self, msg):
            self.calls.append("send")

    monkeypatch.setattr(automation_providers.smtplib, "SMTP", RecordingSMTP)

    assert SmtpEmailSender(Settings(smtp_host="smtp.example.com", smtp_port=587)).starttls is True
    assert SmtpEmailSender(Settings(smtp_host="localhost", smtp_port=1025)).starttls is False
    plain = SmtpEmailSender(Settings(smtp_host="mail.internal", smtp_port=25, smtp_starttls=False))
    forced = SmtpEmailSender(Settings(smtp_host="localhost", smtp_port=1025, smtp_starttls=True))

    plain._deliver("ada@example.com", "Hi", None, "Hello", timeout=5)
    forced._deliver("ada@example.com", "Hi", None, "Hello", timeout=5)

    assert sessions[0].calls == ["ehlo", "send"]
    assert sessions[1].calls == ["ehlo", "starttls", "ehlo", "send"]



class _Response:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_http_research_requester_queues_job(monkeypatch):
    db = _make_session()
    calls = []

    def fake_post(url, **kwargs):
        calls.append({"url": url, **kwargs})
        return _Response(202, {"id": "ext-42"})

    monkeypatch.setattr(automation_providers.requests, "post", fake_post)
    requester = HttpResearchRequester("https://research.example.com", token="tok")

    result = requester.request(
        db,
        project_id=PROJECT_ID,
        entity_type="organization",
        entity_id="org-1",
        research_type="company_overview",
        prompt=None,
        meta={},
        timeout=15,
    )
    db.commit()

    job = db.query(ResearchJob).one()
    assert result == {"research_job_id": job.id, "external_id": "ext-42"}
    assert job.status == "queued"
    assert calls[0]["url"] == "https://research.example.com/research"
    assert calls[0]["headers"]["Authorization"] == "Bearer tok"
    assert calls[0]["json"]["job_id"] == job.id
    assert calls[0]["timeout"] == (5, 15)


def test_http_research_requester_failures_are_permanent(monkeypatch):
    db = _make_session()

    def fake_post(url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(automation_providers.requests, "post", fake_post)
    requester = HttpResearchRequester("https://research.example.com")

    try:
        requester.request(
            db,
            project_id=PROJECT_ID,
            entity_type="organization",
            entity_id="org-1",
            research_type=None,
            prompt=None,
            meta={},
            timeout=15,
        )
        assert False, "Expected ActionError"
    except ActionError as exc:
        assert not isinstance(exc, RetryableActionError)
        assert "Research request failed" in str(exc)
