from __future__ import annotations

import pytest

from samplecontroller.src.models import (
    CustomResourceDefinition,
    Deployment,
    Foo,
    ModelError,
)
from samplecontroller.tests.support import deployment_object, foo_object, owner_reference


def test_foo_from_dict_reads_identity_and_spec() -> None:
    foo = Foo.from_dict(foo_object(name="abc", target_name="bar", desired_replicas=3))

    assert foo.name == "abc"
    assert foo.namespace == "xyz"
    assert foo.uid == "2a198646-da46-417a-be53-b8cd5fcfbdda"
    assert foo.spec.target_name == "bar"
    assert foo.spec.desired_replicas == 3


def test_foo_from_dict_defaults_missing_fields() -> None:
    foo = Foo.from_dict({})

    assert foo.name == ""
    assert foo.spec.target_name == ""
    assert foo.spec.desired_replicas == 0


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"metadata": "abc"},
        {"spec": {"desiredReplicas": "3"}},
        {"spec": {"desiredReplicas": True}},
        {"spec": {"desiredReplicas": 2**31}},
        {"spec": {"targetName": 7}},
    ],
)
def test_foo_from_dict_rejects_wrong_types(payload: object) -> None:
    with pytest.raises(ModelError):
        Foo.from_dict(payload)


def test_deployment_from_dict_reads_owner_references() -> None:
    deployment = Deployment.from_dict(
        deployment_object(replicas=2, resource_version="42", owners=[owner_reference()])
    )

    assert deployment.name == "bar"
    assert deployment.resource_version == "42"
    assert deployment.replicas == 2
    (owner,) = deployment.owner_references
    assert owner.kind == "Foo"
    assert owner.controller is True
    assert owner.block_owner_deletion is True


def test_deployment_without_replicas_keeps_none() -> None:
    deployment = Deployment.from_dict(deployment_object(replicas=None))

    assert deployment.replicas is None


def test_owner_names_filters_by_kind() -> None:
    deployment = Deployment.from_dict(
        deployment_object(
            owners=[
                owner_reference(name="first"),
                owner_reference(name="rs", kind="ReplicaSet"),
                owner_reference(name="second", controller=False),
            ]
        )
    )

    assert deployment.owner_names("Foo") == ["first", "second"]


def test_is_controlled_by_requires_exact_controller_reference() -> None:
    foo = Foo.from_dict(foo_object())

    owned = Deployment.from_dict(deployment_object(owners=[owner_reference()]))
    wrong_uid = Deployment.from_dict(deployment_object(owners=[owner_reference(uid="wrong")]))
    wrong_name = Deployment.from_dict(deployment_object(owners=[owner_reference(name="other")]))
    wrong_kind = Deployment.from_dict(deployment_object(owners=[owner_reference(kind="Bar")]))
    not_controller = Deployment.from_dict(
        deployment_object(owners=[owner_reference(controller=False)])
    )
    orphan = Deployment.from_dict(deployment_object())

    assert owned.is_controlled_by(foo, "Foo")
    assert not wrong_uid.is_controlled_by(foo, "Foo")
    assert not wrong_name.is_controlled_by(foo, "Foo")
    assert not wrong_kind.is_controlled_by(foo, "Foo")
    assert not not_controller.is_controlled_by(foo, "Foo")
    assert not orphan.is_controlled_by(foo, "Foo")


def test_owner_references_must_be_a_list() -> None:
    with pytest.raises(ModelError):
        Deployment.from_dict({"metadata": {"ownerReferences": {"kind": "Foo"}}})


def test_custom_resource_definition_established() -> None:
    crd = CustomResourceDefinition.from_dict(
        {
            "metadata": {"name": "foos.samplecontroller.example.com"},
            "status": {
                "conditions": [
                    {"type": "NamesAccepted", "status": "True"},
                    {"type": "Established", "status": "True"},
                ]
            },
        }
    )

    assert crd.name == "foos.samplecontroller.example.com"
    assert crd.established


def test_custom_resource_definition_not_established() -> None:
    pending = CustomResourceDefinition.from_dict(
        {"status": {"conditions": [{"type": "Established", "status": "False"}]}}
    )
    empty = CustomResourceDefinition.from_dict({})

    assert not pending.established
    assert not empty.established
