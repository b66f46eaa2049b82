"""
Pydantic schemas for automation rules.

Authoring-time validation lives here: trigger configs, conditions and the
per-action config shapes. Actions are a discriminated union keyed on `type`,
so a validated automation carries a typed config for every action.
"""

from __future__ import annotations

import ipaddress
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class TriggerType(str, Enum):
    ENTITY_CREATED = "entity.created"
    ENTITY_UPDATED = "entity.updated"
    ENTITY_DELETED = "entity.deleted"
    FIELD_CHANGED = "field.changed"
    OPPORTUNITY_STAGE_CHANGED = "opportunity.stage_changed"
    RFP_STATUS_CHANGED = "rfp.status_changed"
    EMAIL_OPENED = "email.opened"
    EMAIL_CLICKED = "email.clicked"
    EMAIL_REPLIED = "email.replied"
    EMAIL_BOUNCED = "email.bounced"
    SEQUENCE_COMPLETED = "sequence.completed"
    SEQUENCE_REPLIED = "sequence.replied"
    MEETING_SCHEDULED = "meeting.scheduled"
    MEETING_OUTCOME = "meeting.outcome"
    TASK_COMPLETED = "task.completed"
    TIME_ENTITY_INACTIVE = "time.entity_inactive"
    TIME_TASK_OVERDUE = "time.task_overdue"
    TIME_CLOSE_DATE_APPROACHING = "time.close_date_approaching"
    TIME_CREATED_AGO = "time.created_ago"
    CALL_COMPLETED = "call.completed"
    CALL_MISSED = "call.missed"
    CALL_DISPOSITIONED = "call.dispositioned"


TIME_TRIGGER_TYPES = (
    TriggerType.TIME_ENTITY_INACTIVE,
    TriggerType.TIME_TASK_OVERDUE,
    TriggerType.TIME_CLOSE_DATE_APPROACHING,
    TriggerType.TIME_CREATED_AGO,
)


class ActionType(str, Enum):
    CREATE_TASK = "create_task"
    UPDATE_FIELD = "update_field"
    CHANGE_STAGE = "change_stage"
    CHANGE_STATUS = "change_status"
    ASSIGN_OWNER = "assign_owner"
    SEND_NOTIFICATION = "send_notification"
    SEND_EMAIL = "send_email"
    ENROLL_IN_SEQUENCE = "enroll_in_sequence"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    RUN_AI_RESEARCH = "run_ai_research"
    CREATE_ACTIVITY = "create_activity"
    FIRE_WEBHOOK = "fire_webhook"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    SKIPPED = "skipped"


EntityType = Literal["organization", "person", "opportunity", "rfp", "task", "meeting", "call"]
ENTITY_TYPES = ("organization", "person", "opportunity", "rfp", "task", "meeting", "call")


def _require_uuid(value: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{value!r} is not a valid identifier") from exc


def _is_private_host(hostname: str) -> bool:
    host = hostname.strip("[]").lower()
    if host in {"localhost", "0.0.0.0"} or host.endswith(".internal") or host.endswith(".local"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified or addr.is_reserved


def validate_webhook_url(url: str) -> str:
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValueError("Webhook URL must use HTTP or HTTPS")
    if _is_private_host(parsed.hostname):
        raise ValueError("Webhook URL cannot target private/internal addresses")
    return url.strip()


# --- Trigger config / conditions ---------------------------------------------


class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    entity_type: Optional[EntityType] = None
    field_name: Optional[str] = None
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    sequence_id: Optional[str] = None
    meeting_type: Optional[str] = None
    outcome: Optional[str] = None
    disposition: Optional[str] = None
    direction: Optional[str] = None
    days: Optional[int] = Field(default=None, ge=1, le=365)
    days_before: Optional[int] = Field(default=None, ge=1, le=365)

    @field_validator("sequence_id")
    @classmethod
    def _sequence_uuid(cls, v: Optional[str]) -> Optional[str]:
        return _require_uuid(v) if v is not None else None


class ConditionIn(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None


# --- Action configs ------------------------------------------------------------


class CreateTaskConfig(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_in_days: Optional[int] = Field(default=None, ge=0, le=365)
    assign_to: Optional[str] = None

    @field_validator("assign_to")
    @classmethod
    def _assignee_uuid(cls, v: Optional[str]) -> Optional[str]:
        return _require_uuid(v) if v is not None else None


class UpdateFieldConfig(BaseModel):
    field_name: str = Field(min_length=1)
    value: Any = None


class ChangeStageConfig(BaseModel):
    stage: str = Field(min_length=1)


class ChangeStatusConfig(BaseModel):
    status: str = Field(min_length=1)


class AssignOwnerConfig(BaseModel):
    user_id: str

    @field_validator("user_id")
    @classmethod
    def _user_uuid(cls, v: str) -> str:
        return _require_uuid(v)


class SendNotificationConfig(BaseModel):
    user_id: Optional[str] = None
    user_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = None
    title: Optional[str] = None

    @field_validator("user_id")
    @classmethod
    def _user_uuid(cls, v: Optional[str]) -> Optional[str]:
        return _require_uuid(v) if v is not None else None

    @field_validator("user_ids")
    @classmethod
    def _user_uuids(cls, v: List[str]) -> List[str]:
        return [_require_uuid(item) for item in v]

    @model_validator(mode="after")
    def _has_recipient(self) -> "SendNotificationConfig":
        if not self.user_id and not self.user_ids:
            raise ValueError("No user_id(s) specified")
        return self

    def recipients(self) -> list[str]:
        ids = list(self.user_ids)
        if self.user_id and self.user_id not in ids:
            ids.insert(0, self.user_id)
        return ids


class SendEmailConfig(BaseModel):
    template_id: str = Field(min_length=1)
    to_email: Optional[str] = None


class EnrollInSequenceConfig(BaseModel):
    sequence_id: str = Field(min_length=1)


class TagConfig(BaseModel):
    tag_id: str = Field(min_length=1)


class RunAiResearchConfig(BaseModel):
    research_type: Optional[str] = None
    prompt: Optional[str] = Field(default=None, max_length=4000)


class CreateActivityConfig(BaseModel):
    type: str = "note"
    subject: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class FireWebhookConfig(BaseModel):
    url: str
    secret: Optional[str] = None
    payload_template: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _legacy_url_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "url" not in data and "webhook_url" in data:
            data = dict(data)
            data["url"] = data.pop("webhook_url")
        return data

    @field_validator("url")
    @classmethod
    def _public_http_url(cls, v: str) -> str:
        return validate_webhook_url(v)


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    config: CreateTaskConfig = Field(default_factory=CreateTaskConfig)


class UpdateFieldAction(BaseModel):
    type: Literal["update_field"]
    config: UpdateFieldConfig


class ChangeStageAction(BaseModel):
    type: Literal["change_stage"]
    config: ChangeStageConfig


class ChangeStatusAction(BaseModel):
    type: Literal["change_status"]
    config: ChangeStatusConfig


class AssignOwnerAction(BaseModel):
    type: Literal["assign_owner"]
    config: AssignOwnerConfig


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"]
    config: SendNotificationConfig


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    config: SendEmailConfig


class EnrollInSequenceAction(BaseModel):
    type: Literal["enroll_in_sequence"]
    config: EnrollInSequenceConfig


class AddTagAction(BaseModel):
    type: Literal["add_tag"]
    config: TagConfig


class RemoveTagAction(BaseModel):
    type: Literal["remove_tag"]
    config: TagConfig


class RunAiResearchAction(BaseModel):
    type: Literal["run_ai_research"]
    config: RunAiResearchConfig = Field(default_factory=RunAiResearchConfig)


class CreateActivityAction(BaseModel):
    type: Literal["create_activity"]
    config: CreateActivityConfig = Field(default_factory=CreateActivityConfig)


class FireWebhookAction(BaseModel):
    type: Literal["fire_webhook"]
    config: FireWebhookConfig


AutomationAction = Annotated[
    Union[
        CreateTaskAction,
        UpdateFieldAction,
        ChangeStageAction,
        ChangeStatusAction,
        AssignOwnerAction,
        SendNotificationAction,
        SendEmailAction,
        EnrollInSequenceAction,
        AddTagAction,
        RemoveTagAction,
        RunAiResearchAction,
        CreateActivityAction,
        FireWebhookAction,
    ],
    Field(discriminator="type"),
]

ACTION_ADAPTER: TypeAdapter = TypeAdapter(AutomationAction)


def parse_action(raw: dict) -> Any:
    """Turn a stored `{type, config}` map into its typed action model."""
    return ACTION_ADAPTER.validate_python(raw)


# --- Automation CRUD -------------------------------------------------------------


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: bool = False
    trigger_type: TriggerType
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    conditions: List[ConditionIn] = Field(default_factory=list)
    actions: List[AutomationAction] = Field(min_length=1)
    created_by: Optional[str] = None


class AutomationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: Optional[bool] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[TriggerConfig] = None
    conditions: Optional[List[ConditionIn]] = None
    actions: Optional[List[AutomationAction]] = Field(default=None, min_length=1)


class AutomationOut(BaseModel):
    """Detached view of an automation; this is also what the engine runs."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    name: str
    description: Optional[str] = None
    is_active: bool = False
    trigger_type: str
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: List[dict[str, Any]] = Field(default_factory=list)
    actions: List[dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("trigger_config", mode="before")
    @classmethod
    def _none_config(cls, v: Any) -> Any:
        return v or {}

    @field_validator("conditions", "actions", mode="before")
    @classmethod
    def _none_list(cls, v: Any) -> Any:
        return v or []


class AutomationListOut(BaseModel):
    automations: List[AutomationOut]
    limit: int
    offset: int


class ExecutionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    automation_id: str
    project_id: str
    status: ExecutionStatus
    conditions_met: bool
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    trigger_event: dict[str, Any] = Field(default_factory=dict)
    actions_results: List[dict[str, Any]] = Field(default_factory=list)
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    executed_at: datetime


class ExecutionListOut(BaseModel):
    executions: List[ExecutionOut]
    limit: int
    offset: int


class DryRunIn(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(min_length=1)


class DryRunOut(BaseModel):
    would_trigger: bool
    trigger_matched: bool
    conditions_met: bool
    actions: List[dict[str, Any]]
    entity_data: dict[str, Any]
