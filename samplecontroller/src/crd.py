from __future__ import annotations

from typing import Any

GROUP = "samplecontroller.example.com"
VERSION = "v1alpha1"
KIND = "Foo"
PLURAL = "foos"
API_VERSION = f"{GROUP}/{VERSION}"
CRD_NAME = f"{PLURAL}.{GROUP}"


def foo_custom_resource_definition() -> dict[str, Any]:
    """Return the ``CustomResourceDefinition`` registering the namespaced ``Foo`` kind."""
    spec_schema = {
        "type": "object",
        "properties": {
            "targetName": {"type": "string"},
            "desiredReplicas": {"type": "integer", "format": "int32"},
        },
    }
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": CRD_NAME},
        "spec": {
            "group": GROUP,
            "names": {"kind": KIND, "plural": PLURAL},
            "scope": "Namespaced",
            "versions": [
                {
                    "name": VERSION,
                    "served": True,
                    "storage": True,
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "properties": {"spec": spec_schema},
                        }
                    },
                }
            ],
        },
    }
