import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict

import pytest

from kreconcile.clock import Context
from kreconcile.webhook import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionWebhookAdapter,
    Operation,
    PatchOperation,
    QuietError,
    Status,
    create_patch,
    retrieve_admission_request,
    retrieve_admission_response,
    retrieve_http_request,
    stash_admission_request,
    stash_admission_response,
    stash_http_request,
)

NAMESPACE = "test-namespace"
NAME = "test-resource"
UID = "9deefaa1-2c90-4f40-9c7b-3f5c1fd75dde"

RESOURCE = {
    "metadata": {"namespace": NAMESPACE, "name": NAME},
    "spec": {},
    "status": {
        "conditions": [
            {"type": "Ready", "status": "Unknown", "reason": "Initializing"},
        ]
    },
}


def _request(**overrides):
    base = AdmissionRequest(
        uid=UID,
        namespace=NAMESPACE,
        name=NAME,
        operation=Operation.CREATE,
        object=json.dumps(RESOURCE).encode(),
    )
    return replace(base, **overrides)


def _noop(ctx, resource):
    return None


@dataclass
class FakeHTTPRequest:
    method: str
    path: str


@dataclass
class Widget:
    spec: Dict[str, Any]

    @classmethod
    def from_dict(cls, data):
        return cls(spec=dict(data.get("spec", {})))

    def to_dict(self):
        return {"spec": self.spec}

    def default(self):
        self.spec.setdefault("size", 1)


def test_allowed_by_default_with_no_mutation():
    adapter = AdmissionWebhookAdapter(reconciler=_noop)
    response = adapter.handle(Context(), _request())
    assert response == AdmissionResponse(uid=UID, allowed=True)


def test_mutations_generate_patches_in_response():
    def mutate(ctx, resource):
        resource["spec"]["fields"] = {"hello": "world"}

    adapter = AdmissionWebhookAdapter(reconciler=mutate)
    response = adapter.handle(Context(), _request())
    assert response.allowed is True
    assert response.patches == [
        PatchOperation(op="add", path="/spec/fields", value={"hello": "world"})
    ]


def test_reconcile_errors_deny_request():
    def fail(ctx, resource):
        raise RuntimeError("reconcile error")

    adapter = AdmissionWebhookAdapter(reconciler=fail)
    response = adapter.handle(Context(), _request())
    assert response == AdmissionResponse(
        uid=UID, allowed=False, result=Status(code=500, message="reconcile error")
    )


def test_invalid_json_denies_request():
    adapter = AdmissionWebhookAdapter(reconciler=_noop)
    response = adapter.handle(Context(), _request(object=b"{"))
    assert response.allowed is False
    assert response.result.code == 500
    assert response.patches is None


def test_missing_object_denies_request():
    adapter = AdmissionWebhookAdapter(reconciler=_noop)
    response = adapter.handle(Context(), _request(object=None))
    assert response.allowed is False
    assert response.result == Status(code=500, message="unexpected end of JSON input")


def test_delete_operations_load_resource_from_old_object():
    seen = {}
    old = json.loads(json.dumps(RESOURCE))
    old["spec"]["fields"] = {"hello": "world"}

    def capture(ctx, resource):
        seen["hello"] = resource["spec"]["fields"]["hello"]

    adapter = AdmissionWebhookAdapter(reconciler=capture)
    response = adapter.handle(
        Context(),
        _request(operation=Operation.DELETE, object=None, old_object=json.dumps(old)),
    )
    assert response == AdmissionResponse(uid=UID, allowed=True)
    assert seen == {"hello": "world"}


def test_context_is_defined():
    seen = {}
    http_request = FakeHTTPRequest(method="POST", path="/path")
    request = _request()

    def capture(ctx, resource):
        seen["request"] = retrieve_admission_request(ctx)
        seen["response"] = replace(retrieve_admission_response(ctx))
        seen["http"] = retrieve_http_request(ctx)

    webhook = AdmissionWebhookAdapter(reconciler=capture).build()
    response = webhook.handle(http_request, request)
    assert response == AdmissionResponse(uid=UID, allowed=True)
    assert seen["request"] == request
    assert seen["response"] == AdmissionResponse(uid=UID, allowed=True)
    assert seen["http"] is http_request


def test_context_can_be_augmented_by_caller():
    seen = {}

    def capture(ctx, resource):
        seen["value"] = ctx.value("test-key")

    ctx = Context().with_value("test-key", "test-value")
    response = AdmissionWebhookAdapter(reconciler=capture).handle(ctx, _request())
    assert response.allowed is True
    assert seen == {"value": "test-value"}


def test_reconciler_object_with_reconcile_method():
    class Sequence:
        def __init__(self, *steps):
            self.steps = steps

        def reconcile(self, ctx, resource):
            for step in self.steps:
                step(ctx, resource)

    def first(ctx, resource):
        resource["spec"]["greeting"] = "hello"

    def second(ctx, resource):
        resource["spec"]["greeting"] += " world"

    adapter = AdmissionWebhookAdapter(reconciler=Sequence(first, second))
    response = adapter.handle(Context(), _request())
    assert response.patches == [
        PatchOperation(op="add", path="/spec/greeting", value="hello world")
    ]


def test_reconciler_can_deny_without_error():
    def deny(ctx, resource):
        retrieve_admission_response(ctx).allowed = False

    response = AdmissionWebhookAdapter(reconciler=deny).handle(Context(), _request())
    assert response == AdmissionResponse(uid=UID, allowed=False)


def test_reconciler_result_is_kept_on_error():
    def fail(ctx, resource):
        retrieve_admission_response(ctx).result = Status(code=403, message="forbidden")
        raise RuntimeError("boom")

    response = AdmissionWebhookAdapter(reconciler=fail).handle(Context(), _request())
    assert response.allowed is False
    assert response.result == Status(code=403, message="forbidden")


def test_existing_patch_type_suppresses_generated_patch():
    def mutate(ctx, resource):
        retrieve_admission_response(ctx).patch_type = "JSONPatch"
        resource["spec"]["fields"] = {"hello": "world"}

    response = AdmissionWebhookAdapter(reconciler=mutate).handle(Context(), _request())
    assert response.patches is None
    assert response.patch_type == "JSONPatch"


def test_errors_are_logged(caplog):
    def fail(ctx, resource):
        raise RuntimeError("loud")

    with caplog.at_level(logging.INFO, logger="kreconcile.webhook"):
        AdmissionWebhookAdapter(reconciler=fail).handle(Context(), _request())
    assert [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR] == [
        "reconcile error"
    ]


def test_quiet_errors_are_not_logged(caplog):
    def fail(ctx, resource):
        raise RuntimeError("wrapped") from QuietError("quiet")

    with caplog.at_level(logging.INFO, logger="kreconcile.webhook"):
        response = AdmissionWebhookAdapter(reconciler=fail).handle(Context(), _request())
    assert [r for r in caplog.records if r.levelno >= logging.ERROR] == []
    assert response.allowed is False
    assert response.result == Status(code=500, message="wrapped")


def test_defaulting_alone_does_not_patch():
    adapter = AdmissionWebhookAdapter(reconciler=_noop, resource_type=Widget)
    response = adapter.handle(Context(), _request(object=b'{"spec": {}}'))
    assert response == AdmissionResponse(uid=UID, allowed=True)


def test_patch_includes_defaults_when_mutated():
    def mutate(ctx, resource):
        resource.spec["color"] = "red"

    adapter = AdmissionWebhookAdapter(reconciler=mutate, resource_type=Widget)
    response = adapter.handle(Context(), _request(object=b'{"spec": {}}'))
    assert response.patches == [
        PatchOperation(op="add", path="/spec/size", value=1),
        PatchOperation(op="add", path="/spec/color", value="red"),
    ]


def test_default_names():
    assert AdmissionWebhookAdapter(reconciler=_noop).name == "dictAdmissionWebhookAdapter"
    widget = AdmissionWebhookAdapter(reconciler=_noop, resource_type=Widget)
    assert widget.name == "WidgetAdmissionWebhookAdapter"
    named = AdmissionWebhookAdapter(reconciler=_noop, name="custom")
    assert named.name == "custom"


def test_invalid_configuration_raises():
    with pytest.raises(TypeError):
        AdmissionWebhookAdapter(reconciler=None)
    with pytest.raises(TypeError):
        AdmissionWebhookAdapter(reconciler=_noop, resource_type=int)


def test_non_object_json_denies_request():
    response = AdmissionWebhookAdapter(reconciler=_noop).handle(
        Context(), _request(object=b"[1, 2]")
    )
    assert response.allowed is False
    assert response.result.code == 500


def test_operation_string_is_coerced():
    assert AdmissionRequest(operation="DELETE").operation is Operation.DELETE
    with pytest.raises(ValueError):
        AdmissionRequest(operation="EXPLODE")


def test_retrieve_defaults_on_empty_context():
    ctx = Context()
    assert retrieve_admission_request(ctx) == AdmissionRequest()
    assert retrieve_admission_response(ctx) is None
    assert retrieve_http_request(ctx) is None


def test_stash_round_trips():
    request = _request()
    response = AdmissionResponse(uid=UID, allowed=True)
    http_request = FakeHTTPRequest(method="POST", path="/path")
    ctx = stash_http_request(
        stash_admission_response(stash_admission_request(Context(), request), response),
        http_request,
    )
    assert retrieve_admission_request(ctx) is request
    assert retrieve_admission_response(ctx) is response
    assert retrieve_http_request(ctx) is http_request


def test_create_patch_no_change():
    assert create_patch({"a": [1, {"b": 2}]}, {"a": [1, {"b": 2}]}) == []


def test_create_patch_objects():
    original = {"keep": 1, "drop": 2, "change": {"x": 1}}
    modified = {"keep": 1, "change": {"x": 2}, "new": True}
    assert create_patch(original, modified) == [
        PatchOperation("remove", "/drop"),
        PatchOperation("replace", "/change/x", 2),
        PatchOperation("add", "/new", True),
    ]


def test_create_patch_arrays():
    assert create_patch({"a": [1, 2]}, {"a": [1, 3, 4, 5]}) == [
        PatchOperation("replace", "/a/1", 3),
        PatchOperation("add", "/a/2", 4),
        PatchOperation("add", "/a/3", 5),
    ]
    assert create_patch({"a": [1, 2, 3]}, {"a": [1]}) == [
        PatchOperation("remove", "/a/2"),
        PatchOperation("remove", "/a/1"),
    ]


def test_create_patch_escapes_keys_and_replaces_types():
    assert create_patch({"a/b": 1, "c~d": 1}, {"a/b": 2, "c~d": 2}) == [
        PatchOperation("replace", "/a~1b", 2),
        PatchOperation("replace", "/c~0d", 2),
    ]
    assert create_patch({"a": 1}, {"a": True}) == [PatchOperation("replace", "/a", True)]
    assert create_patch([1], {"x": 1}) == [PatchOperation("replace", "", {"x": 1})]


def test_patch_operation_to_dict():
    assert PatchOperation("add", "/x", {"k": "v"}).to_dict() == {
        "op": "add",
        "path": "/x",
        "value": {"k": "v"},
    }
    assert PatchOperation("remove", "/x").to_dict() == {"op": "remove", "path": "/x"}