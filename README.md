# kreconcile

Small building blocks for writing resource reconcilers in Python. The
package has no dependencies outside the standard library.

## Modules

### `kreconcile.clock`

- `Context` – an immutable chain of key/value pairs. `with_value(key, value)`
  returns a new context that shadows its parent; `value(key)` returns the
  nearest value stored under `key`, or `None`. A `None` key raises
  `ValueError`.
- `stash_now(ctx, now)` stashes a `datetime` in the context, unless one is
  already stashed, so a whole reconcile pass sees one "now".
- `retrieve_now(ctx)` returns the stashed time, or the current UTC time if
  none was stashed.

### `kreconcile.tracker`

- `Tracker(lease, clock=None)` records which objects watch which other
  objects. `lease` is a number of seconds or a `timedelta`; `clock` is a
  callable returning seconds (defaults to `time.monotonic`).
  - `track_reference(ref, obj)` registers `obj` as watching the referent
    described by a `Reference`: either by exact `name`, or by label
    `selector` (optionally limited to a `namespace`; an empty namespace
    matches every namespace). Each registration expires after the lease
    unless it is renewed.
  - `track_object(ref, obj)` does the same for a referent given as a
    `TrackedObject`, taking the group from its `api_version`.
  - `get_observers(obj)` returns the `NamespacedName` of every live watcher
    of a `TrackedObject`, in no particular order, and drops expired
    registrations as it goes.
- `Reference` fields are validated: `kind` must be a C identifier,
  `api_group` (if set) a DNS-1123 subdomain, `namespace` (if set) a DNS-1123
  label, `name` (if set) a DNS-1123 subdomain, and exactly one of `name` and
  `selector` must be given. A failure raises `InvalidReferenceError` listing
  every problem, sorted.
- Objects passed to the tracker are `TrackedObject`s
  (`api_version`, `kind`, `namespace`, `name`, `labels`); one without a
  `kind` raises `ValueError`.
- `LabelSelector.matches(labels)` checks that every required label is
  present with the required value; `selector_from_set(labels)` builds one.
- `GroupKind`, `GroupVersionKind`, and the deprecated `Key` / `new_key(gvk,
  namespaced_name)` are also provided.

### `kreconcile.util`

- `extract_items(object_list, item_type)` returns the `items` of a list
  object as a list, raising `TypeError` if the object has no `items` or an
  item is not an `item_type`.

### `kreconcile.webhook`

- `AdmissionWebhookAdapter(reconciler, resource_type=dict, name="")` runs a
  reconciler against an admission request. `reconciler` is a callable
  `(ctx, resource)` or an object with `reconcile(ctx, resource)`;
  `resource_type` is `dict` (or a subclass) or a class with `from_dict` and
  `to_dict`. `name` defaults to `<TypeName>AdmissionWebhookAdapter`.
  - `handle(ctx, request)` decodes `request.object` (or `request.old_object`
    for `Operation.DELETE`), calls the resource's `default()` method if it
    has one, then the reconciler. The response is allowed by default; if
    the reconciler raises, or the object is missing or is not valid JSON,
    the request is denied and, unless the reconciler already set one, the
    result is `Status(code=500, message=str(error))`. Errors that are (or
    are caused by) a `QuietError` deny without being logged. If the resource
    was changed and the response has no `patches`, `patch` or `patch_type`
    already, `response.patches` is set to a JSON patch from the submitted
    object to the mutated one.
  - `build()` returns a `Webhook`, whose `handle(http_request, request)`
    stashes the HTTP request in a fresh context and calls the adapter.
- During reconciliation the context holds the request, the response and
  the HTTP request: `retrieve_admission_request(ctx)` (empty
  `AdmissionRequest` if absent), `retrieve_admission_response(ctx)` and
  `retrieve_http_request(ctx)` (`None` if absent), with matching `stash_*`
  functions. `retrieve_now(ctx)` returns the time the request was handled.
- `create_patch(original, modified)` returns a list of `PatchOperation`
  (`op`, `path`, `value`; `to_dict()` for JSON) turning one decoded JSON
  value into another.

## Example

```python
from datetime import timedelta

from kreconcile.tracker import Reference, TrackedObject, Tracker, selector_from_set

tracker = Tracker(lease=timedelta(hours=1))
watcher = TrackedObject(api_version="apps/v1", kind="Deployment",
                        namespace="default", name="web")
config_map = TrackedObject(api_version="v1", kind="ConfigMap",
                           namespace="default", name="settings",
                           labels={"app": "web"})

tracker.track_reference(
    Reference(kind="ConfigMap", selector=selector_from_set({"app": "web"})),
    watcher,
)
print(tracker.get_observers(config_map))  # [NamespacedName(namespace='default', name='web')]
```

## What it does not do

The package does not talk to a cluster API and does not serve HTTP. The
webhook classes take an already decoded `AdmissionRequest` and return an
`AdmissionResponse`; receiving requests and sending responses is left to
whatever server you use. The tracker only records and answers who watches
what; it does not watch objects or trigger reconciliation itself.

## Tests

```
pip install .[test]
pytest
```