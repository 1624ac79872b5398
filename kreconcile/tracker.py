"""Track cross references between objects so that changes to a referent
can trigger reconciliation of the objects that refer to it.

A watcher registers interest in a referent, either by exact name or by a
label selector, for a lease period. The registration must be refreshed
periodically or it expires.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

__all__ = [
    "NamespacedName",
    "GroupKind",
    "GroupVersionKind",
    "TrackedObject",
    "LabelSelector",
    "selector_from_set",
    "Reference",
    "Key",
    "new_key",
    "InvalidReferenceError",
    "Tracker",
]


@dataclass(frozen=True, order=True)
class NamespacedName:
    """A namespace and name pair identifying an object."""

    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class GroupKind:
    group: str = ""
    kind: str = ""


@dataclass(frozen=True)
class GroupVersionKind:
    group: str = ""
    version: str = ""
    kind: str = ""

    @property
    def group_kind(self) -> GroupKind:
        return GroupKind(group=self.group, kind=self.kind)


@dataclass
class TrackedObject:
    """The identifying parts of an object as seen by the tracker."""

    api_version: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LabelSelector:
    """A selector requiring each listed label to have the given value."""

    requirements: Tuple[Tuple[str, str], ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(key in labels and labels[key] == value for key, value in self.requirements)

    def __str__(self) -> str:
        return ",".join(f"{key}={value}" for key, value in self.requirements)


def selector_from_set(labels: Mapping[str, str]) -> LabelSelector:
    """Build a selector matching objects carrying all of ``labels``."""
    return LabelSelector(tuple(sorted(labels.items())))


@dataclass(frozen=True)
class Reference:
    """A reference to a tracked object, by name or by selector."""

    api_group: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""
    selector: Optional[LabelSelector] = None


@dataclass(frozen=True)
class Key:
    """Deprecated: use Reference."""

    group_kind: GroupKind
    namespaced_name: NamespacedName


def new_key(gvk: GroupVersionKind, namespaced_name: NamespacedName) -> Key:
    """Deprecated: use Reference."""
    return Key(group_kind=gvk.group_kind, namespaced_name=namespaced_name)


class InvalidReferenceError(ValueError):
    """Raised when a Reference fails validation."""


_C_IDENTIFIER_FMT = "[A-Za-z_][A-Za-z0-9_]*"
_DNS1123_LABEL_FMT = "[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_SUBDOMAIN_FMT = _DNS1123_LABEL_FMT + r"(\." + _DNS1123_LABEL_FMT + ")*"
_DNS1123_LABEL_MAX = 63
_DNS1123_SUBDOMAIN_MAX = 253

_C_IDENTIFIER_RE = re.compile(_C_IDENTIFIER_FMT)
_DNS1123_LABEL_RE = re.compile(_DNS1123_LABEL_FMT)
_DNS1123_SUBDOMAIN_RE = re.compile(_DNS1123_SUBDOMAIN_FMT)


def _regex_error(message: str, fmt: str, *examples: str) -> str:
    if examples:
        message += " (e.g. " + ", or ".join(f"'{e}'" for e in examples) + ", "
    else:
        message += " ("
    return message + f"regex used for validation is '{fmt}')"


def _is_c_identifier(value: str) -> List[str]:
    if _C_IDENTIFIER_RE.fullmatch(value):
        return []
    return [
        _regex_error(
            "a valid C identifier must start with alphabetic character or '_', "
            "followed by a string of alphanumeric characters or '_'",
            _C_IDENTIFIER_FMT,
            "my_name",
            "MY_NAME",
            "MyName",
        )
    ]


def _is_dns1123_label(value: str) -> List[str]:
    errors = []
    if len(value) > _DNS1123_LABEL_MAX:
        errors.append(f"must be no more than {_DNS1123_LABEL_MAX} characters")
    if not _DNS1123_LABEL_RE.fullmatch(value):
        errors.append(
            _regex_error(
                "a lowercase RFC 1123 label must consist of lower case alphanumeric "
                "characters or '-', and must start and end with an alphanumeric character",
                _DNS1123_LABEL_FMT,
                "my-name",
                "123-abc",
            )
        )
    return errors


def _is_dns1123_subdomain(value: str) -> List[str]:
    errors = []
    if len(value) > _DNS1123_SUBDOMAIN_MAX:
        errors.append(f"must be no more than {_DNS1123_SUBDOMAIN_MAX} characters")
    if not _DNS1123_SUBDOMAIN_RE.fullmatch(value):
        errors.append(
            _regex_error(
                "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric "
                "characters, '-' or '.', and must start and end with an alphanumeric character",
                _DNS1123_SUBDOMAIN_FMT,
                "example.com",
            )
        )
    return errors


def _parse_group_version(api_version: str) -> Tuple[str, str]:
    """Split an apiVersion into (group, version)."""
    if api_version in ("", "/"):
        return "", ""
    parts = api_version.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected GroupVersion string: {api_version}")


def _require_kind(obj: TrackedObject) -> None:
    if not obj.kind:
        raise ValueError(f"object {obj.namespace}/{obj.name} has no kind")


@dataclass
class _Matcher:
    selector: LabelSelector
    expiry: float


# (selector string, namespace); an empty namespace matches every namespace
_MatcherKey = Tuple[str, str]


class Tracker:
    """Records which objects watch which references, each for a lease."""

    def __init__(
        self,
        lease: Union[float, timedelta],
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if isinstance(lease, timedelta):
            lease = lease.total_seconds()
        self._lease = float(lease)
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._exact: Dict[Reference, Dict[NamespacedName, float]] = {}
        self._inexact: Dict[Reference, Dict[NamespacedName, Dict[_MatcherKey, _Matcher]]] = {}

    def track_object(self, ref: TrackedObject, obj: TrackedObject) -> None:
        """Record that ``obj`` tracks changes to the object ``ref``."""
        _require_kind(ref)
        try:
            group, _ = _parse_group_version(ref.api_version)
        except ValueError:
            group = ""
        self.track_reference(
            Reference(api_group=group, kind=ref.kind, namespace=ref.namespace, name=ref.name),
            obj,
        )

    def track_reference(self, ref: Reference, obj: TrackedObject) -> None:
        """Record that ``obj`` tracks changes to objects matching ``ref``."""
        invalid: Dict[str, List[str]] = {"Kind": _is_c_identifier(ref.kind)}
        if ref.api_group:
            invalid["APIGroup"] = _is_dns1123_subdomain(ref.api_group)
        if ref.namespace:
            invalid["Namespace"] = _is_dns1123_label(ref.namespace)
        field_errors: List[str] = []
        if ref.selector is not None and ref.name:
            field_errors.append("cannot provide both Name and Selector")
        elif ref.name:
            invalid["Name"] = _is_dns1123_subdomain(ref.name)
        elif ref.selector is None:
            field_errors.append("must provide either Name or Selector")
        field_errors.extend(f"{key}: {msg}" for key, msgs in invalid.items() for msg in msgs)
        if field_errors:
            raise InvalidReferenceError("invalid Reference:\n" + "\n".join(sorted(field_errors)))

        key = NamespacedName(namespace=obj.namespace, name=obj.name)

        with self._lock:
            expiry = self._clock() + self._lease
            if ref.selector is None:
                self._exact.setdefault(ref, {})[key] = expiry
                return

            partial = Reference(api_group=ref.api_group, kind=ref.kind)
            matchers = self._inexact.setdefault(partial, {}).setdefault(key, {})
            matchers[(str(ref.selector), ref.namespace)] = _Matcher(ref.selector, expiry)

    def get_observers(self, obj: TrackedObject) -> List[NamespacedName]:
        """Return the keys of all live watchers of ``obj``, in no particular order."""
        _require_kind(obj)
        group, _ = _parse_group_version(obj.api_version)
        ref = Reference(api_group=group, kind=obj.kind, namespace=obj.namespace, name=obj.name)

        found: Dict[NamespacedName, None] = {}

        with self._lock:
            now = self._clock()

            exact = self._exact.get(ref)
            if exact is not None:
                for key, expiry in list(exact.items()):
                    if now > expiry:
                        del exact[key]
                        continue
                    found[key] = None
                if not exact:
                    del self._exact[ref]

            partial = Reference(api_group=group, kind=obj.kind)
            inexact = self._inexact.get(partial)
            if inexact is not None:
                for key, matchers in list(inexact.items()):
                    for mkey, matcher in list(matchers.items()):
                        if now > matcher.expiry:
                            del matchers[mkey]
                            continue
                        namespace = mkey[1]
                        if namespace and namespace != obj.namespace:
                            continue
                        if not matcher.selector.matches(obj.labels):
                            continue
                        found[key] = None
                    if not matchers:
                        del inexact[key]
                if not inexact:
                    del self._inexact[partial]

        return list(found)