from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiClient
from kubernetes.client import RbacV1Subject
from kubernetes.client import V1ClusterRole
from kubernetes.client import V1ClusterRoleBinding
from kubernetes.client import V1ClusterRoleBindingList
from kubernetes.client import V1ClusterRoleList
from kubernetes.client import V1ConfigMap
from kubernetes.client import V1ListMeta
from kubernetes.client import V1ObjectMeta
from kubernetes.client import V1PolicyRule
from kubernetes.client import V1Role
from kubernetes.client import V1RoleBinding
from kubernetes.client import V1RoleBindingList
from kubernetes.client import V1RoleList
from kubernetes.client import V1RoleRef
from kubernetes.client.exceptions import ApiException

from rbaclab.intel.cluster import build_policy_from_cluster
from rbaclab.intel.cluster import get_aws_auth_configmap
from rbaclab.intel.cluster import get_k8s_clients
from rbaclab.intel.cluster import k8s_paginate
from rbaclab.intel.cluster import KubernetesContextNotFound
from rbaclab.intel.cluster import to_manifest
from tests.data.rbaclab.aws_auth import AWS_AUTH_CONFIGMAP_DATA

READ_ONLY_PROJECT = V1Role(
    metadata=V1ObjectMeta(name="ReadOnlyProject", namespace="project"),
    rules=[V1PolicyRule(api_groups=[""], resources=["pods"], verbs=["get", "watch", "list"])],
)
ATTACH_READ_ONLY_PROJECT = V1RoleBinding(
    metadata=V1ObjectMeta(name="AttachReadOnlyProject", namespace="project"),
    role_ref=V1RoleRef(api_group="rbac.authorization.k8s.io", kind="Role", name="ReadOnlyProject"),
    subjects=[RbacV1Subject(api_group="rbac.authorization.k8s.io", kind="User", name="Aravind")],
)
CLUSTER_READ_ONLY = V1ClusterRole(
    metadata=V1ObjectMeta(name="ClusterReadOnly"),
    rules=[
        V1PolicyRule(
            api_groups=[""],
            resources=["secrets", "persistentvolumes", "nodes"],
            verbs=["get", "watch", "list"],
        )
    ],
)
ATTACH_CLUSTER_READ_ONLY = V1ClusterRoleBinding(
    metadata=V1ObjectMeta(name="AttachClusterReadOnly"),
    role_ref=V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name="ClusterReadOnly"),
    subjects=[RbacV1Subject(api_group="rbac.authorization.k8s.io", kind="User", name="Aravind")],
)


def _mock_client(aws_auth=None):
    client = MagicMock()
    client.name = "lab"
    client.rbac.api_client = MagicMock(wraps=ApiClient())
    client.rbac.list_role_for_all_namespaces.return_value = V1RoleList(
        items=[READ_ONLY_PROJECT], metadata=V1ListMeta()
    )
    client.rbac.list_cluster_role.return_value = V1ClusterRoleList(
        items=[CLUSTER_READ_ONLY], metadata=V1ListMeta()
    )
    client.rbac.list_role_binding_for_all_namespaces.return_value = V1RoleBindingList(
        items=[ATTACH_READ_ONLY_PROJECT], metadata=V1ListMeta()
    )
    client.rbac.list_cluster_role_binding.return_value = V1ClusterRoleBindingList(
        items=[ATTACH_CLUSTER_READ_ONLY], metadata=V1ListMeta()
    )
    if aws_auth is None:
        client.core.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")
    else:
        client.core.read_namespaced_config_map.return_value = aws_auth
    return client


def test_k8s_paginate_follows_continue_tokens():
    list_func = MagicMock(
        side_effect=[
            V1RoleList(items=[READ_ONLY_PROJECT], metadata=V1ListMeta(_continue="page-2")),
            V1RoleList(items=[READ_ONLY_PROJECT], metadata=V1ListMeta()),
        ]
    )

    items = k8s_paginate(list_func)

    assert len(items) == 2
    assert list_func.call_count == 2
    list_func.assert_called_with(limit=100, _continue="page-2")


def test_to_manifest_uses_manifest_field_names():
    body = to_manifest(ATTACH_READ_ONLY_PROJECT, "RoleBinding", ApiClient())

    assert body["kind"] == "RoleBinding"
    assert body["apiVersion"] == "rbac.authorization.k8s.io/v1"
    assert body["roleRef"] == {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": "ReadOnlyProject"}
    assert body["subjects"][0]["apiGroup"] == "rbac.authorization.k8s.io"


def test_get_aws_auth_configmap_missing_returns_none():
    assert get_aws_auth_configmap(_mock_client()) is None


def test_get_aws_auth_configmap_other_errors_propagate():
    client = _mock_client()
    client.core.read_namespaced_config_map.side_effect = ApiException(status=403, reason="Forbidden")
    with pytest.raises(ApiException):
        get_aws_auth_configmap(client)


def test_build_policy_from_cluster():
    aws_auth = V1ConfigMap(
        metadata=V1ObjectMeta(name="aws-auth", namespace="kube-system"),
        data=AWS_AUTH_CONFIGMAP_DATA,
    )

    client = _mock_client(aws_auth)

    policy = build_policy_from_cluster(client)

    assert policy.get_role("project", "ReadOnlyProject").rules[0].resources == ("pods",)
    assert policy.get_cluster_role("ClusterReadOnly") is not None
    assert policy.role_bindings[("project", "AttachReadOnlyProject")].subjects[0].name == "Aravind"
    assert policy.cluster_role_bindings["AttachClusterReadOnly"].role_ref.kind == "ClusterRole"
    assert len(policy.identity_mappings) == 7
    assert policy.mapped_accounts == ["210987654321"]
    # Every object is serialised by the client the RBAC API already holds
    assert client.rbac.api_client.sanitize_for_serialization.call_count == 4


def test_build_policy_without_aws_auth():
    policy = build_policy_from_cluster(_mock_client())
    assert policy.identity_mappings == []


def test_get_k8s_clients_unknown_context(tmp_path, monkeypatch):
    monkeypatch.setattr(
        "rbaclab.intel.cluster.config.list_kube_config_contexts",
        lambda path: ([{"name": "lab", "context": {"cluster": "lab-cluster"}}], None),
    )
    with pytest.raises(KubernetesContextNotFound):
        get_k8s_clients(str(tmp_path / "config"), "prod")


def test_get_k8s_clients_without_contexts(tmp_path, monkeypatch):
    monkeypatch.setattr(
        "rbaclab.intel.cluster.config.list_kube_config_contexts",
        lambda path: ([], None),
    )
    with pytest.raises(KubernetesContextNotFound):
        get_k8s_clients(str(tmp_path / "config"))
