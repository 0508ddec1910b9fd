from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ModelError(ValueError):
    """Raised when a JSON payload does not have the shape of the requested kind."""


def _mapping(data: Any, what: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ModelError(f"{what} must be an object, got {type(data).__name__}")
    return data


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ModelError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _boolean(data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ModelError(f"{key} must be a boolean, got {type(value).__name__}")
    return value


def _int32(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    # bool is a subclass of int but never a valid replica count.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ModelError(f"{key} must be an integer, got {type(value).__name__}")
    if not -(2**31) <= value < 2**31:
        raise ModelError(f"{key} out of int32 range: {value}")
    return value


@dataclass(frozen=True)
class OwnerReference:
    """Back-link from a subordinate object to the object controlling its lifecycle."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> OwnerReference:
        data = _mapping(data, "ownerReference")
        return cls(
            api_version=_string(data, "apiVersion"),
            kind=_string(data, "kind"),
            name=_string(data, "name"),
            uid=_string(data, "uid"),
            controller=_boolean(data, "controller"),
            block_owner_deletion=_boolean(data, "blockOwnerDeletion"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass(frozen=True)
class ObjectMeta:
    """The subset of ``metadata`` the controller reads."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    owner_references: tuple[OwnerReference, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> ObjectMeta:
        data = _mapping(data, "metadata")
        raw_refs = data.get("ownerReferences") or []
        if not isinstance(raw_refs, list):
            raise ModelError("ownerReferences must be a list")
        return cls(
            name=_string(data, "name"),
            namespace=_string(data, "namespace"),
            uid=_string(data, "uid"),
            resource_version=_string(data, "resourceVersion"),
            owner_references=tuple(OwnerReference.from_dict(ref) for ref in raw_refs),
        )


@dataclass(frozen=True)
class FooSpec:
    target_name: str = ""
    desired_replicas: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> FooSpec:
        data = _mapping(data, "spec")
        return cls(
            target_name=_string(data, "targetName"),
            desired_replicas=_int32(data, "desiredReplicas") or 0,
        )


@dataclass(frozen=True)
class Foo:
    """A managed resource: declares how many replicas its target deployment should run."""

    metadata: ObjectMeta
    spec: FooSpec

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def uid(self) -> str:
        return self.metadata.uid

    @classmethod
    def from_dict(cls, data: Any) -> Foo:
        data = _mapping(data, "Foo")
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            spec=FooSpec.from_dict(data.get("spec")),
        )


@dataclass(frozen=True)
class Deployment:
    """Observed deployment. ``replicas`` is ``None`` when the server omitted it."""

    metadata: ObjectMeta
    replicas: int | None = None

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def resource_version(self) -> str:
        return self.metadata.resource_version

    @property
    def owner_references(self) -> tuple[OwnerReference, ...]:
        return self.metadata.owner_references

    @classmethod
    def from_dict(cls, data: Any) -> Deployment:
        data = _mapping(data, "Deployment")
        spec = _mapping(data.get("spec"), "spec")
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata")),
            replicas=_int32(spec, "replicas"),
        )

    def owner_names(self, kind: str) -> list[str]:
        """Return the names of every owner of the given kind."""
        return [ref.name for ref in self.owner_references if ref.kind == kind]

    def is_controlled_by(self, owner: Foo, kind: str) -> bool:
        return any(
            ref.controller
            and ref.kind == kind
            and ref.name == owner.name
            and ref.uid == owner.uid
            for ref in self.owner_references
        )


@dataclass(frozen=True)
class CustomResourceDefinition:
    name: str
    conditions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> CustomResourceDefinition:
        data = _mapping(data, "CustomResourceDefinition")
        status = _mapping(data.get("status"), "status")
        raw_conditions = status.get("conditions") or []
        if not isinstance(raw_conditions, list):
            raise ModelError("status.conditions must be a list")
        conditions: dict[str, str] = {}
        for raw in raw_conditions:
            condition = _mapping(raw, "condition")
            conditions[_string(condition, "type")] = _string(condition, "status")
        return cls(
            name=ObjectMeta.from_dict(data.get("metadata")).name,
            conditions=conditions,
        )

    @property
    def established(self) -> bool:
        return self.conditions.get("Established") == "True"
