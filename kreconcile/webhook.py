"""Admission webhooks driven by sub reconcilers.

An :class:`AdmissionWebhookAdapter` decodes the object carried by an
admission request, hands it to a reconciler and turns the outcome into an
admission response. Requests are allowed unless the reconciler clears
``allowed`` on the response or raises. If the reconciler mutates the
resource and the response carries no patch of its own, a JSON patch from
the submitted object to the mutated one is added to the response.
"""

from __future__ import annotations

import copy
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from kreconcile.clock import Context, stash_now
from kreconcile.tracker import GroupVersionKind

__all__ = [
    "Operation",
    "Status",
    "PatchOperation",
    "AdmissionRequest",
    "AdmissionResponse",
    "QuietError",
    "Webhook",
    "AdmissionWebhookAdapter",
    "create_patch",
    "stash_admission_request",
    "retrieve_admission_request",
    "stash_admission_response",
    "retrieve_admission_response",
    "stash_http_request",
    "retrieve_http_request",
]

_log = logging.getLogger("kreconcile.webhook")

_ADMISSION_REQUEST_KEY = "kreconcile:admission-request"
_ADMISSION_RESPONSE_KEY = "kreconcile:admission-response"
_HTTP_REQUEST_KEY = "kreconcile:http-request"
_LOGGER_KEY = "kreconcile:logger"

RawObject = Union[bytes, str, None]


class Operation(str, enum.Enum):
    """The operation an admission request was raised for."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


@dataclass
class Status:
    """The outcome reported with a denied request."""

    code: int = 0
    message: str = ""


@dataclass
class PatchOperation:
    """A single JSON patch operation."""

    op: str
    path: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"op": self.op, "path": self.path}
        if self.op != "remove":
            data["value"] = self.value
        return data


@dataclass
class AdmissionRequest:
    """An admission request, with the objects as raw JSON."""

    uid: str = ""
    kind: Optional[GroupVersionKind] = None
    resource: str = ""
    namespace: str = ""
    name: str = ""
    operation: Optional[Operation] = None
    object: RawObject = None
    old_object: RawObject = None

    def __post_init__(self) -> None:
        if self.operation is not None and not isinstance(self.operation, Operation):
            self.operation = Operation(self.operation)


@dataclass
class AdmissionResponse:
    """An admission response under construction or as returned."""

    uid: str = ""
    allowed: bool = False
    result: Optional[Status] = None
    patches: Optional[List[PatchOperation]] = None
    patch: Optional[bytes] = None
    patch_type: Optional[str] = None


class QuietError(Exception):
    """An error that denies the request without being logged."""


def _is_quiet(err: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        if isinstance(current, QuietError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _same(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True) == json.dumps(b, sort_keys=True)


def _diff(path: str, old: Any, new: Any, ops: List[PatchOperation]) -> None:
    if _same(old, new):
        return
    if isinstance(old, dict) and isinstance(new, dict):
        for key, old_value in old.items():
            child = f"{path}/{_escape(str(key))}"
            if key in new:
                _diff(child, old_value, new[key], ops)
            else:
                ops.append(PatchOperation("remove", child))
        ops.extend(
            PatchOperation("add", f"{path}/{_escape(str(key))}", copy.deepcopy(value))
            for key, value in new.items()
            if key not in old
        )
        return
    if isinstance(old, list) and isinstance(new, list):
        common = min(len(old), len(new))
        for index, (old_item, new_item) in enumerate(zip(old, new)):
            _diff(f"{path}/{index}", old_item, new_item, ops)
        ops.extend(
            PatchOperation("add", f"{path}/{index}", copy.deepcopy(item))
            for index, item in enumerate(new[common:], start=common)
        )
        ops.extend(
            PatchOperation("remove", f"{path}/{index}")
            for index in reversed(range(common, len(old)))
        )
        return
    ops.append(PatchOperation("replace", path, copy.deepcopy(new)))


def create_patch(original: Any, modified: Any) -> List[PatchOperation]:
    """Return JSON patch operations turning ``original`` into ``modified``.

    Both arguments are decoded JSON values. Object members are visited in
    document order, so the operations follow the layout of the documents.
    """
    ops: List[PatchOperation] = []
    _diff("", original, modified, ops)
    return ops


def stash_admission_request(ctx: Context, request: AdmissionRequest) -> Context:
    return ctx.with_value(_ADMISSION_REQUEST_KEY, request)


def retrieve_admission_request(ctx: Context) -> AdmissionRequest:
    """Return the stashed admission request, or an empty one if none."""
    value = ctx.value(_ADMISSION_REQUEST_KEY)
    if isinstance(value, AdmissionRequest):
        return value
    return AdmissionRequest()


def stash_admission_response(ctx: Context, response: AdmissionResponse) -> Context:
    return ctx.with_value(_ADMISSION_RESPONSE_KEY, response)


def retrieve_admission_response(ctx: Context) -> Optional[AdmissionResponse]:
    """Return the stashed admission response, or None if none."""
    value = ctx.value(_ADMISSION_RESPONSE_KEY)
    if isinstance(value, AdmissionResponse):
        return value
    return None


def stash_http_request(ctx: Context, request: Any) -> Context:
    return ctx.with_value(_HTTP_REQUEST_KEY, request)


def retrieve_http_request(ctx: Context) -> Any:
    """Return the stashed HTTP request, or None if none."""
    return ctx.value(_HTTP_REQUEST_KEY)


def _logger(ctx: Context) -> logging.LoggerAdapter:
    value = ctx.value(_LOGGER_KEY)
    if isinstance(value, logging.LoggerAdapter):
        return value
    return logging.LoggerAdapter(_log, {})


def _with_log_values(base: logging.LoggerAdapter, **values: Any) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(base.logger, {**(base.extra or {}), **values})


@dataclass
class AdmissionWebhookAdapter:
    """Processes admission requests with a reconciler.

    ``reconciler`` is either an object with a ``reconcile(ctx, resource)``
    method or a callable taking ``(ctx, resource)``; its return value is
    ignored. ``resource_type`` is ``dict`` (or a subclass) for plain JSON
    objects, or a class with ``from_dict`` and ``to_dict``. A resource with
    a ``default()`` method is defaulted before reconciliation.
    """

    reconciler: Any
    resource_type: type = dict
    name: str = ""

    def __post_init__(self) -> None:
        reconcile = getattr(self.reconciler, "reconcile", self.reconciler)
        if not callable(reconcile):
            raise TypeError("reconciler must be callable or define reconcile(ctx, resource)")
        self._reconcile_fn: Callable[[Context, Any], Any] = reconcile
        if not self._is_plain():
            if not callable(getattr(self.resource_type, "from_dict", None)):
                raise TypeError(
                    f"resource type {self.resource_type.__name__} must be a dict or define from_dict"
                )
        if not self.name:
            self.name = f"{self.resource_type.__name__}AdmissionWebhookAdapter"

    def _is_plain(self) -> bool:
        return isinstance(self.resource_type, type) and issubclass(self.resource_type, dict)

    def build(self) -> "Webhook":
        """Return a webhook that prepares a context for each HTTP request."""
        return Webhook(adapter=self)

    def _context_for(self, ctx: Context, http_request: Any) -> Context:
        base = _logger(ctx)
        logger = logging.LoggerAdapter(
            base.logger.getChild(self.name),
            {**(base.extra or {}), "webhook": getattr(http_request, "path", "")},
        )
        ctx = ctx.with_value(_LOGGER_KEY, logger)
        return stash_http_request(ctx, http_request)

    def handle(self, ctx: Context, request: AdmissionRequest) -> AdmissionResponse:
        """Reconcile the request's object and return the admission response."""
        log = _with_log_values(
            _logger(ctx),
            uid=request.uid,
            kind=request.kind,
            resource=request.resource,
            operation=request.operation,
        )
        ctx = ctx.with_value(_LOGGER_KEY, log)

        # allowed by default; a reconciler may clear it or raise
        response = AdmissionResponse(uid=request.uid, allowed=True)

        ctx = stash_now(ctx, datetime.now(timezone.utc))
        ctx = stash_admission_request(ctx, request)
        ctx = stash_admission_response(ctx, response)

        try:
            self._reconcile(ctx, request, response, log)
        except Exception as err:
            if not _is_quiet(err):
                log.error("reconcile error", exc_info=err)
            response.allowed = False
            if response.result is None:
                response.result = Status(code=500, message=str(err))

        return response

    def _decode(self, data: Any) -> Any:
        if self._is_plain():
            if not isinstance(data, dict):
                raise ValueError("admission object must be a JSON object")
            return self.resource_type(copy.deepcopy(data))
        return self.resource_type.from_dict(copy.deepcopy(data))

    @staticmethod
    def _encode(resource: Any) -> Any:
        if isinstance(resource, dict):
            return json.loads(json.dumps(resource))
        return json.loads(json.dumps(resource.to_dict()))

    def _reconcile(
        self,
        ctx: Context,
        request: AdmissionRequest,
        response: AdmissionResponse,
        log: logging.LoggerAdapter,
    ) -> None:
        raw = request.old_object if request.operation is Operation.DELETE else request.object
        if not raw:
            raise ValueError("unexpected end of JSON input")
        data = json.loads(raw)
        resource = self._decode(data)

        default = getattr(resource, "default", None)
        if callable(default):
            default()

        original = json.dumps(self._encode(resource), sort_keys=True)
        self._reconcile_fn(ctx, resource)

        if response.patches is None and response.patch is None and response.patch_type is None:
            mutated = self._encode(resource)
            if json.dumps(mutated, sort_keys=True) != original:
                # the patch runs from the submitted object, so defaults are included
                response.patches = create_patch(data, mutated)
                log.info(
                    "mutating resource: %s",
                    json.dumps([op.to_dict() for op in response.patches]),
                )


@dataclass
class Webhook:
    """An HTTP-facing admission webhook backed by an adapter."""

    adapter: AdmissionWebhookAdapter
    base_context: Context = field(default_factory=Context)

    def handle(self, http_request: Any, request: AdmissionRequest) -> AdmissionResponse:
        """Handle an admission request received with ``http_request``."""
        ctx = self.adapter._context_for(self.base_context, http_request)
        return self.adapter.handle(ctx, request)