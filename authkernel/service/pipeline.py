from __future__ import annotations

import asyncio
import copy
import re
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from argon2 import PasswordHasher
from jsonschema import Draft202012Validator

from authkernel.config import Settings
from authkernel.logging import (
    MASKED_OUTPUT,
    get_logger,
    log_pipeline_trace,
    sanitize_pipeline_trace,
)
from authkernel.service.email import EmailOptions, EmailSender
from authkernel.service.egress import AllowlistedFetcher, EgressError
from authkernel.service.errors import PipelineAbortedError, ValidationError
from authkernel.storage.common import ENTITIES, EntityStore, record_from_entity
from authkernel.storage.errors import ConstraintViolation, StorageUnavailable
from authkernel.storage.models import ActionStep, FlowActionType, Password, User

logger = get_logger(__name__)

DEFAULT_STEP_TIMEOUT_MS = 5000
DEFAULT_PIPELINE_BUDGET_MS = 20000
MAX_TRACE_ENTRIES = 500
MAX_ALIAS_LENGTH = 100

POST_LOGIN_TRIGGER = "post-login"

_INTERPOLATION = re.compile(r"\$\{([^}]+)\}")
_EMAIL_SYNTAX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FREE_EMAIL_DOMAINS = frozenset(
    {
        "aol.com",
        "gmail.com",
        "gmx.com",
        "googlemail.com",
        "hotmail.com",
        "icloud.com",
        "live.com",
        "mail.com",
        "msn.com",
        "outlook.com",
        "proton.me",
        "protonmail.com",
        "yahoo.com",
        "yandex.com",
        "zoho.com",
    }
)

DISPOSABLE_EMAIL_DOMAINS = frozenset(
    {
        "10minutemail.com",
        "dispostable.com",
        "getnada.com",
        "guerrillamail.com",
        "mailinator.com",
        "maildrop.cc",
        "sharklasers.com",
        "temp-mail.org",
        "tempmail.com",
        "throwawaymail.com",
        "trashmail.com",
        "yopmail.com",
    }
)

UPDATABLE_USER_FIELDS = frozenset(
    {
        "email",
        "email_verified",
        "name",
        "given_name",
        "family_name",
        "nickname",
        "picture",
        "phone_number",
        "blocked",
        "app_metadata",
        "user_metadata",
    }
)

_USER_PROFILE_PROPERTIES = {
    "name": {"type": "string"},
    "given_name": {"type": "string"},
    "family_name": {"type": "string"},
    "nickname": {"type": "string"},
    "picture": {"type": "string"},
    "phone_number": {"type": "string"},
    "email_verified": {"type": "boolean"},
    "app_metadata": {"type": "object"},
    "user_metadata": {"type": "object"},
}

PARAM_SCHEMAS: Dict[Tuple[str, str], dict] = {
    ("AUTH0", "UPDATE_USER"): {
        "type": "object",
        "required": ["user_id", "changes"],
        "properties": {
            "user_id": {"type": "string", "minLength": 1},
            "connection_id": {"type": "string"},
            "changes": {
                "type": "object",
                "minProperties": 1,
                "properties": {
                    "email": {"type": "string", "minLength": 3},
                    "blocked": {"type": "boolean"},
                    **_USER_PROFILE_PROPERTIES,
                },
                "additionalProperties": False,
            },
        },
        "additionalProperties": False,
    },
    ("AUTH0", "CREATE_USER"): {
        "type": "object",
        "required": ["email"],
        "properties": {
            "email": {"type": "string", "minLength": 3},
            "connection": {"type": "string"},
            "password": {"type": "string", "minLength": 8},
            **_USER_PROFILE_PROPERTIES,
        },
        "additionalProperties": False,
    },
    ("AUTH0", "GET_USER"): {
        "type": "object",
        "properties": {
            "user_id": {"type": "string", "minLength": 1},
            "email": {"type": "string", "minLength": 3},
            "connection": {"type": "string"},
        },
        "anyOf": [{"required": ["user_id"]}, {"required": ["email"]}],
        "additionalProperties": False,
    },
    ("AUTH0", "SEND_REQUEST"): {
        "type": "object",
        "required": ["url"],
        "properties": {
            "url": {"type": "string", "minLength": 1},
            "method": {"enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "body": {},
            "timeout_ms": {"type": "integer", "minimum": 1},
        },
        "additionalProperties": False,
    },
    ("AUTH0", "SEND_EMAIL"): {
        "type": "object",
        "required": ["to", "template"],
        "properties": {
            "to": {"type": "string", "minLength": 3},
            "template": {"type": "string", "minLength": 1},
            "subject": {"type": "string"},
            "from": {"type": "string"},
            "data": {"type": "object"},
        },
        "additionalProperties": False,
    },
    ("EMAIL", "VERIFY_EMAIL"): {
        "type": "object",
        "required": ["email"],
        "properties": {
            "email": {"type": "string"},
            "rules": {
                "type": "object",
                "properties": {
                    "require_mx_record": {"type": "boolean"},
                    "block_aliases": {"type": "boolean"},
                    "block_free_emails": {"type": "boolean"},
                    "block_disposable_emails": {"type": "boolean"},
                    "blocklist": {"type": "array", "items": {"type": "string"}},
                    "allowlist": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
        "additionalProperties": False,
    },
}

_VALIDATORS = {key: Draft202012Validator(schema) for key, schema in PARAM_SCHEMAS.items()}


class ActionFailure(Exception):
    """Raised by a handler when its step fails."""

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


@dataclass
class StepResult:
    output: Dict[str, Any] = field(default_factory=dict)
    user_patch: Optional[Dict[str, Any]] = None


@dataclass
class PipelineResult:
    context: Dict[str, Any]
    trace: List[Dict[str, Any]]


Handler = Callable[[str, Dict[str, Any], Mapping[str, Any]], Awaitable[StepResult]]
MxResolver = Callable[[str], Awaitable[bool]]


def json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def entity_view(entity_name: str, entity: Any) -> Dict[str, Any]:
    """Plain JSON-safe view of a stored entity for the pipeline context."""
    return json_safe(record_from_entity(ENTITIES[entity_name], entity))


def _lookup(path: str, context: Mapping[str, Any]) -> Any:
    root: Any = context
    for part in path.strip().split("."):
        if isinstance(root, dict):
            root = root.get(part)
        elif isinstance(root, list) and part.isdigit() and int(part) < len(root):
            root = root[int(part)]
        else:
            return None
    return root


def resolve_params(value: Any, context: Mapping[str, Any]) -> Any:
    """Substitute ``${path.to.value}`` references against the pipeline context.

    A string that is exactly one reference takes the referenced value with its
    type; references inside longer strings are rendered as text.
    """
    if isinstance(value, str):
        whole = _INTERPOLATION.fullmatch(value)
        if whole:
            return copy.deepcopy(_lookup(whole.group(1), context))
        return _INTERPOLATION.sub(
            lambda m: "" if _lookup(m.group(1), context) is None else str(_lookup(m.group(1), context)),
            value,
        )
    if isinstance(value, dict):
        return {k: resolve_params(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_params(v, context) for v in value]
    return value


def _has_reference(value: Any) -> bool:
    if isinstance(value, str):
        return bool(_INTERPOLATION.search(value))
    if isinstance(value, dict):
        return any(_has_reference(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_reference(v) for v in value)
    return False


def _param_errors(step: ActionStep, params: Any) -> List[str]:
    validator = _VALIDATORS.get((step.type.value, step.action))
    if validator is None:
        return [f"unknown action {step.type.value}.{step.action}"]
    errors = sorted(validator.iter_errors(params), key=lambda e: list(e.path))
    return [e.message for e in errors]


def validate_actions(actions: Sequence[ActionStep]) -> None:
    """Reject flows with duplicate ids, long aliases, unknown handlers or bad params.

    Params still holding ``${...}`` references are checked again after
    interpolation at run time.
    """
    problems: List[Dict[str, Any]] = []
    seen: set = set()
    for index, step in enumerate(actions):
        if not step.id:
            problems.append({"index": index, "error": "step id is required"})
        elif step.id in seen:
            problems.append({"index": index, "error": f"duplicate step id {step.id}"})
        seen.add(step.id)
        if step.alias is not None and len(step.alias) > MAX_ALIAS_LENGTH:
            problems.append({"index": index, "error": "alias exceeds 100 characters"})
        if (step.type.value, step.action) not in PARAM_SCHEMAS:
            problems.append(
                {"index": index, "error": f"unknown action {step.type.value}.{step.action}"}
            )
            continue
        if _has_reference(step.params):
            continue
        for message in _param_errors(step, step.params):
            problems.append({"index": index, "step_id": step.id, "error": message})
    if problems:
        raise ValidationError("invalid flow actions", detail={"errors": problems})


async def resolve_mx(domain: str) -> bool:
    """Approximate an MX lookup by resolving the domain itself."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(domain, None, type=socket.SOCK_STREAM)
    except OSError:
        return False
    return bool(infos)


def _domain_matches(domain: str, entries: Sequence[str]) -> bool:
    for entry in entries:
        candidate = entry.strip().lower().lstrip("@")
        if candidate and (domain == candidate or domain.endswith("." + candidate)):
            return True
    return False


class ActionExecutor:
    """Runs flow action steps sequentially against a pipeline context."""

    def __init__(
        self,
        store: EntityStore,
        settings: Settings,
        *,
        fetcher: AllowlistedFetcher,
        email_sender: EmailSender,
        password_hasher: Optional[PasswordHasher] = None,
        mx_resolver: Optional[MxResolver] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.fetcher = fetcher
        self.email_sender = email_sender
        self.password_hasher = password_hasher or PasswordHasher()
        self.mx_resolver = mx_resolver or resolve_mx
        self.step_timeout_ms = settings.pipeline_step_timeout_ms or DEFAULT_STEP_TIMEOUT_MS
        self.budget_ms = settings.pipeline_budget_ms or DEFAULT_PIPELINE_BUDGET_MS
        self._handlers = self._builtin_handlers()

    def _builtin_handlers(self) -> Dict[Tuple[str, str], Handler]:
        return {
            ("AUTH0", "UPDATE_USER"): self._update_user,
            ("AUTH0", "CREATE_USER"): self._create_user,
            ("AUTH0", "GET_USER"): self._get_user,
            ("AUTH0", "SEND_REQUEST"): self._send_request,
            ("AUTH0", "SEND_EMAIL"): self._send_email,
            ("EMAIL", "VERIFY_EMAIL"): self._verify_email,
        }

    def _append_trace(
        self,
        trace: List[Dict[str, Any]],
        entry: Dict[str, Any],
        max_entries: int = MAX_TRACE_ENTRIES,
    ) -> None:
        trace.append(entry)
        if len(trace) > max_entries:
            del trace[0 : len(trace) - max_entries]

    def _abort(
        self, trace: List[Dict[str, Any]], step: ActionStep, cause: str
    ) -> PipelineAbortedError:
        sanitized = sanitize_pipeline_trace(trace)
        log_pipeline_trace(sanitized, logger)
        error = PipelineAbortedError(step.id, cause)
        error.trace = sanitized
        return error

    async def run_trigger(
        self, tenant_id: str, trigger_id: str, context: Mapping[str, Any]
    ) -> PipelineResult:
        """Run every enabled flow bound to ``trigger_id`` as one pipeline."""
        hooks = [
            hook
            for hook in self.store.hooks.list_all(tenant_id, q=f'trigger_id:"{trigger_id}"')
            if hook.enabled
        ]
        hooks.sort(key=lambda h: (-h.priority, h.created_at, h.hook_id))
        actions: List[ActionStep] = []
        for hook in hooks:
            flow = self.store.flows.get(tenant_id, hook.flow_id)
            if flow is None:
                logger.warning("hook_flow_missing", tenant_id=tenant_id, hook_id=hook.hook_id)
                continue
            actions.extend(flow.actions)
        return await self.run(tenant_id, actions, context)

    async def run(
        self,
        tenant_id: str,
        actions: Sequence[ActionStep],
        context: Mapping[str, Any],
    ) -> PipelineResult:
        ctx: Dict[str, Any] = copy.deepcopy(dict(context))
        ctx.setdefault("steps", {})
        trace: List[Dict[str, Any]] = []
        started = time.monotonic()

        for step in actions:
            remaining_ms = self.budget_ms - (time.monotonic() - started) * 1000
            if remaining_ms <= 0:
                logger.warning(
                    "pipeline_timeout", tenant_id=tenant_id, step_id=step.id, budget_ms=self.budget_ms
                )
                raise self._abort(trace, step, "pipeline time budget exhausted")

            step_started = time.monotonic()
            timeout_ms = min(self.step_timeout_ms, remaining_ms)
            budget_bound = remaining_ms < self.step_timeout_ms
            error: Optional[str] = None
            exhausted = False
            result: Optional[StepResult] = None
            try:
                result = await asyncio.wait_for(
                    self._execute_step(tenant_id, step, ctx), timeout=timeout_ms / 1000.0
                )
            except asyncio.TimeoutError:
                exhausted = budget_bound
                error = "pipeline time budget exhausted" if exhausted else "step timed out"
                logger.warning(
                    "action_step_timeout", tenant_id=tenant_id, step_id=step.id, timeout_ms=timeout_ms
                )
            except ActionFailure as exc:
                error = exc.message
            except StorageUnavailable:
                raise
            except Exception as exc:
                # details stay in the log, the trace only records that the step broke
                logger.error(
                    "action_step_error",
                    tenant_id=tenant_id,
                    step_id=step.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                error = "action handler error"
            duration_ms = round((time.monotonic() - step_started) * 1000, 2)

            entry: Dict[str, Any] = {
                "step_id": step.id,
                "type": step.type.value,
                "action": step.action,
                "duration_ms": duration_ms,
            }
            if error is not None:
                entry.update(status="failed", error=error)
                self._append_trace(trace, entry)
                if not step.allow_failure or exhausted:
                    logger.warning(
                        "pipeline_aborted", tenant_id=tenant_id, step_id=step.id, error=error
                    )
                    raise self._abort(trace, step, error)
                logger.info("action_step_failure_allowed", tenant_id=tenant_id, step_id=step.id)
                continue

            ctx["steps"][step.output_key] = result.output
            if result.user_patch and isinstance(ctx.get("user"), dict):
                ctx["user"] = {**ctx["user"], **json_safe(result.user_patch)}
            entry.update(
                status="succeeded",
                output=MASKED_OUTPUT if step.mask_output else copy.deepcopy(result.output),
            )
            self._append_trace(trace, entry)

        log_pipeline_trace(sanitize_pipeline_trace(trace), logger)
        return PipelineResult(context=ctx, trace=trace)

    async def _execute_step(
        self, tenant_id: str, step: ActionStep, ctx: Mapping[str, Any]
    ) -> StepResult:
        handler = self._handlers.get((step.type.value, step.action))
        if handler is None:
            raise ActionFailure(f"unknown action {step.type.value}.{step.action}")
        params = resolve_params(step.params, ctx)
        problems = _param_errors(step, params)
        if problems:
            raise ActionFailure("invalid action params", {"errors": problems})
        return await handler(tenant_id, params, ctx)

    # -- AUTH0 handlers -----------------------------------------------------

    async def _update_user(
        self, tenant_id: str, params: Dict[str, Any], ctx: Mapping[str, Any]
    ) -> StepResult:
        user_id = params["user_id"]
        changes = dict(params["changes"])
        unknown = sorted(set(changes) - UPDATABLE_USER_FIELDS)
        if unknown:
            raise ActionFailure("changes contain fields that cannot be updated", {"fields": unknown})
        user = self.store.users.get(tenant_id, user_id)
        if user is None:
            raise ActionFailure("user not found")
        connection_id = params.get("connection_id")
        if connection_id and connection_id != user.connection:
            raise ActionFailure("user does not belong to connection")
        for metadata_field in ("app_metadata", "user_metadata"):
            if metadata_field in changes:
                merged = {**getattr(user, metadata_field), **(changes[metadata_field] or {})}
                # null removes a metadata key
                changes[metadata_field] = {k: v for k, v in merged.items() if v is not None}
        try:
            self.store.users.update(tenant_id, user_id, changes)
        except ConstraintViolation as exc:
            raise ActionFailure("user update conflicts with an existing user") from exc
        current_user = ctx.get("user") or {}
        patch = changes if current_user.get("user_id") == user_id else None
        return StepResult(output={"user_id": user_id, "updated": sorted(changes)}, user_patch=patch)

    async def _create_user(
        self, tenant_id: str, params: Dict[str, Any], ctx: Mapping[str, Any]
    ) -> StepResult:
        profile = {k: params[k] for k in _USER_PROFILE_PROPERTIES if k in params}
        user = User(
            user_id=f"auth0|{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            email=params["email"].strip().lower(),
            connection=params.get("connection") or "Username-Password-Authentication",
            **profile,
        )
        try:
            created = self.store.users.create(tenant_id, user)
        except ConstraintViolation as exc:
            raise ActionFailure("user already exists") from exc
        if params.get("password"):
            self.store.passwords.create(
                tenant_id,
                Password(
                    user_id=created.user_id,
                    tenant_id=tenant_id,
                    password_hash=self.password_hasher.hash(params["password"]),
                ),
            )
        logger.info("action_user_created", tenant_id=tenant_id, user_id=created.user_id)
        return StepResult(output={"user_id": created.user_id, "email": created.email})

    async def _get_user(
        self, tenant_id: str, params: Dict[str, Any], ctx: Mapping[str, Any]
    ) -> StepResult:
        user = None
        if params.get("user_id"):
            user = self.store.users.get(tenant_id, params["user_id"])
        else:
            query = f'email:"{params["email"].strip().lower()}"'
            if params.get("connection"):
                query += f' connection:"{params["connection"]}"'
            matches = self.store.users.list(tenant_id, q=query, per_page=1).items
            user = matches[0] if matches else None
        if user is None:
            raise ActionFailure("user not found")
        return StepResult(output=entity_view("users", user))

    async def _send_request(
        self, tenant_id: str, params: Dict[str, Any], ctx: Mapping[str, Any]
    ) -> StepResult:
        method = params.get("method", "POST")
        body = params.get("body")
        timeout_ms = params.get("timeout_ms") or self.step_timeout_ms
        try:
            response = await self.fetcher.request(
                method,
                params["url"],
                headers=params.get("headers"),
                json=body if method != "GET" and body is not None else None,
                timeout=timeout_ms / 1000.0,
            )
        except EgressError as exc:
            raise ActionFailure(str(exc)) from exc
        if not 200 <= response.status_code < 300:
            raise ActionFailure(
                f"request returned HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
        else:
            payload = response.text
        return StepResult(output={"status_code": response.status_code, "body": payload})

    async def _send_email(
        self, tenant_id: str, params: Dict[str, Any], ctx: Mapping[str, Any]
    ) -> StepResult:
        tenant = self.store.tenants.get(tenant_id, tenant_id)
        options = EmailOptions(
            to=params["to"],
            tenant_id=tenant_id,
            subject=params.get("subject"),
            from_address=params.get("from")
            or (tenant.sender_email if tenant else None)
            or self.settings.email_from_address,
            from_name=(tenant.sender_name if tenant else None) or self.settings.email_from_name,
        )
        result = await self.email_sender.send_email(
            params["template"], params.get("data") or {}, options
        )
        if not result.ok:
            raise ActionFailure(f"email delivery failed: {result.error or 'unknown error'}")
        return StepResult(output={"message_id": result.message_id, "provider": result.provider})

    # -- EMAIL handlers -----------------------------------------------------

    async def _verify_email(
        self, tenant_id: str, params: Dict[str, Any], ctx: Mapping[str, Any]
    ) -> StepResult:
        email = (params.get("email") or "").strip().lower()
        rules = params.get("rules") or {}
        if not _EMAIL_SYNTAX.match(email):
            raise ActionFailure("email address is malformed", {"reason": "syntax"})
        local, domain = email.rsplit("@", 1)
        if rules.get("block_aliases") and "+" in local:
            raise ActionFailure("email aliases are not allowed", {"reason": "alias"})
        if _domain_matches(domain, rules.get("allowlist") or []):
            return StepResult(output={"email": email, "valid": True, "allowlisted": True})
        if _domain_matches(domain, rules.get("blocklist") or []):
            raise ActionFailure("email domain is blocked", {"reason": "blocklist"})
        if rules.get("block_free_emails") and domain in FREE_EMAIL_DOMAINS:
            raise ActionFailure("free email providers are not allowed", {"reason": "free"})
        if rules.get("block_disposable_emails") and domain in DISPOSABLE_EMAIL_DOMAINS:
            raise ActionFailure("disposable email providers are not allowed", {"reason": "disposable"})
        if rules.get("require_mx_record") and not await self.mx_resolver(domain):
            raise ActionFailure("email domain does not accept mail", {"reason": "mx"})
        return StepResult(output={"email": email, "valid": True})
