import pytest

from rbaclab.authorizer import Authorizer
from rbaclab.authorizer import make_user
from rbaclab.authorizer import non_resource_url_matches
from rbaclab.authorizer import resource_matches
from rbaclab.authorizer import service_account_user
from rbaclab.authorizer import subject_matches
from rbaclab.models.rbac import NonResourceAttributes
from rbaclab.models.rbac import PolicyRule
from rbaclab.models.rbac import ResourceAttributes
from rbaclab.models.rbac import Subject
from rbaclab.models.rbac import UserInfo
from tests.data.rbaclab.manifests import AGGREGATED_ROLES
from tests.data.rbaclab.manifests import BROKEN_BINDINGS
from tests.data.rbaclab.manifests import CLUSTER_ADMIN
from tests.data.rbaclab.manifests import CLUSTER_READ_ONLY
from tests.data.rbaclab.manifests import NON_RESOURCE
from tests.data.rbaclab.manifests import PROJECT_READ_ONLY
from tests.data.rbaclab.manifests import SERVICE_ACCOUNT_LIST
from tests.unit.rbaclab.helpers import policy_from_text

ARAVIND = make_user("Aravind")


@pytest.fixture
def authorizer():
    return Authorizer(policy_from_text(PROJECT_READ_ONLY, CLUSTER_READ_ONLY))


def test_make_user_adds_groups():
    assert make_user("alice").groups == ("system:authenticated",)
    sa = make_user("system:serviceaccount:ci:deployer", ["extra"])
    assert sa.groups == (
        "extra",
        "system:serviceaccounts",
        "system:serviceaccounts:ci",
        "system:authenticated",
    )


def test_subject_matches():
    sa = service_account_user("ci", "deployer")
    assert subject_matches(Subject(kind="ServiceAccount", name="deployer"), sa, "ci")
    assert not subject_matches(Subject(kind="ServiceAccount", name="deployer"), sa, "")
    assert subject_matches(Subject(kind="Group", name="system:serviceaccounts:ci"), sa)
    # Names are case sensitive
    assert not subject_matches(Subject(kind="User", name="aravind"), ARAVIND)
    assert not subject_matches(Subject(kind="Robot", name="Aravind"), ARAVIND)


@pytest.mark.parametrize(
    "resources,resource,subresource,expected",
    [
        (("pods",), "pods", "", True),
        (("pods",), "pods", "log", False),
        (("pods/log",), "pods", "log", True),
        (("pods/log",), "pods", "", False),
        (("*/scale",), "deployments", "scale", True),
        (("*",), "pods", "exec", True),
    ],
)
def test_resource_matches(resources, resource, subresource, expected):
    rule = PolicyRule(verbs=("get",), api_groups=("",), resources=resources)
    assert resource_matches(rule, resource, subresource) is expected


@pytest.mark.parametrize(
    "urls,path,expected",
    [
        (("/healthz",), "/healthz", True),
        (("/healthz",), "/healthz/ready", False),
        (("/metrics/*",), "/metrics/cadvisor", True),
        (("*",), "/anything", True),
    ],
)
def test_non_resource_url_matches(urls, path, expected):
    rule = PolicyRule(verbs=("get",), non_resource_urls=urls)
    assert non_resource_url_matches(rule, path) is expected


def test_role_binding_allows_only_in_its_namespace(authorizer):
    allowed = authorizer.authorize(ARAVIND, ResourceAttributes(verb="list", resource="pods", namespace="project"))
    assert allowed.allowed
    assert allowed.reason == (
        'RBAC: allowed by RoleBinding "AttachReadOnlyProject" in namespace "project" of Role "ReadOnlyProject" '
        'to user "Aravind"'
    )
    assert allowed.grant.namespace == "project"

    elsewhere = authorizer.authorize(ARAVIND, ResourceAttributes(verb="list", resource="pods", namespace="default"))
    assert not elsewhere.allowed


CLUSTER_ROLE_IN_NAMESPACE = """
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRole
metadata:
  name: deployment-editor
rules:
- apiGroups: ["apps"]
  resources: ["deployments"]
  verbs: ["get", "update"]
---
apiVersion: rbac.authorization.k8s.io/v1
kind: RoleBinding
metadata:
  name: jane-edits-deployments
  namespace: project
subjects:
- kind: User
  name: jane
  apiGroup: rbac.authorization.k8s.io
roleRef:
  kind: ClusterRole
  name: deployment-editor
  apiGroup: rbac.authorization.k8s.io
"""


def test_role_binding_to_cluster_role_is_limited_to_its_namespace():
    authorizer = Authorizer(policy_from_text(CLUSTER_ROLE_IN_NAMESPACE))
    jane = make_user("jane")

    def update_deployments(namespace):
        attrs = ResourceAttributes(verb="update", resource="deployments", api_group="apps", namespace=namespace)
        return authorizer.authorize(jane, attrs)

    allowed = update_deployments("project")
    assert allowed.allowed
    assert allowed.grant.role.kind == "ClusterRole"
    assert allowed.grant.namespace == "project"

    assert not update_deployments("default").allowed
    assert not update_deployments("").allowed


def test_cluster_role_binding_applies_everywhere(authorizer):
    for namespace in ("", "project", "kube-system"):
        decision = authorizer.authorize(
            ARAVIND,
            ResourceAttributes(verb="get", resource="secrets", namespace=namespace),
        )
        assert decision.allowed
        assert decision.grant.binding.name == "AttachClusterReadOnly"


def test_rbac_is_deny_by_default(authorizer):
    decision = authorizer.authorize(
        ARAVIND,
        ResourceAttributes(verb="delete", resource="pods", namespace="project"),
    )
    assert not decision.allowed
    assert decision.reason == 'RBAC: user "Aravind" cannot delete pods in namespace project'

    nobody = authorizer.authorize(make_user("jane"), ResourceAttributes(verb="get", resource="secrets"))
    assert not nobody.allowed


def test_api_group_must_match(authorizer):
    decision = authorizer.authorize(
        ARAVIND,
        ResourceAttributes(verb="get", resource="pods", namespace="project", api_group="metrics.k8s.io"),
    )
    assert not decision.allowed


def test_service_account_subresource_and_resource_names():
    authorizer = Authorizer(policy_from_text(SERVICE_ACCOUNT_LIST))
    deployer = make_user("system:serviceaccount:ci:deployer")

    def can(**kwargs):
        return authorizer.authorize(deployer, ResourceAttributes(verb="get", namespace="ci", **kwargs)).allowed

    assert can(resource="pods", subresource="log", name="builder")
    assert not can(resource="pods", subresource="log", name="other")
    assert not can(resource="pods", subresource="exec", name="builder")


def test_non_resource_requests():
    authorizer = Authorizer(policy_from_text(NON_RESOURCE))
    monitor = make_user("prometheus", ["monitoring"])

    assert authorizer.authorize(monitor, NonResourceAttributes(verb="get", path="/healthz")).allowed
    assert authorizer.authorize(monitor, NonResourceAttributes(verb="get", path="/metrics/cadvisor")).allowed
    assert not authorizer.authorize(monitor, NonResourceAttributes(verb="post", path="/healthz")).allowed


def test_aggregated_roles_grant_permissions():
    text = AGGREGATED_ROLES + """
---
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRoleBinding
metadata:
  name: sre-monitoring
subjects:
- kind: Group
  name: sre
  apiGroup: rbac.authorization.k8s.io
roleRef:
  kind: ClusterRole
  name: monitoring-admin
  apiGroup: rbac.authorization.k8s.io
"""
    authorizer = Authorizer(policy_from_text(text))
    attrs = ResourceAttributes(verb="list", resource="servicemonitors", api_group="monitoring.coreos.com")
    assert authorizer.authorize(make_user("amy", ["sre"]), attrs).allowed


def test_privileged_group_bypasses_rbac(authorizer):
    admin = UserInfo(name="admin-user", groups=("system:masters",))
    decision = authorizer.authorize(admin, ResourceAttributes(verb="delete", resource="nodes"))
    assert decision.allowed
    assert decision.reason == 'allowed: member of privileged group "system:masters"'

    strict = Authorizer(authorizer.policy, privileged_groups=())
    assert not strict.authorize(admin, ResourceAttributes(verb="delete", resource="nodes")).allowed


def test_missing_role_refs_are_reported():
    authorizer = Authorizer(policy_from_text(PROJECT_READ_ONLY, BROKEN_BINDINGS))
    decision = authorizer.authorize(
        make_user("bob"),
        ResourceAttributes(verb="get", resource="pods", namespace="project"),
    )
    assert not decision.allowed
    assert decision.missing_role_refs == (
        'RoleBinding "points-nowhere" in namespace "project" references missing Role "DoesNotExist"',
    )
    assert "DoesNotExist" in decision.reason


def test_rules_for(authorizer):
    cluster_only = authorizer.rules_for(ARAVIND)
    assert [g.role.name for g in cluster_only] == ["ClusterReadOnly"]

    in_project = authorizer.rules_for(ARAVIND, "project")
    assert [g.role.name for g in in_project] == ["ClusterReadOnly", "ReadOnlyProject"]


def test_who_can():
    authorizer = Authorizer(policy_from_text(PROJECT_READ_ONLY, CLUSTER_READ_ONLY, CLUSTER_ADMIN))

    grants = authorizer.who_can(ResourceAttributes(verb="list", resource="secrets", namespace="project"))
    subjects = [str(g.subject) for g in grants]

    assert subjects == [
        "User/Aravind",
        "Group/ops",
        "ServiceAccount/kube-system/default",
        "Group/system:masters",
    ]
    assert grants[-1].binding is None

    pods = authorizer.who_can(ResourceAttributes(verb="get", resource="pods", namespace="project"))
    assert {str(g.subject) for g in pods} == {
        "Group/ops",
        "ServiceAccount/kube-system/default",
        "User/Aravind",
        "Group/system:masters",
    }


NAMESPACELESS_SERVICE_ACCOUNTS = """
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRole
metadata:
  name: pod-reader
rules:
- apiGroups: [""]
  resources: ["pods"]
  verbs: ["get"]
---
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRoleBinding
metadata:
  name: builders-read-pods
subjects:
- kind: ServiceAccount
  name: builder
- kind: ServiceAccount
  name: builder
  namespace: ci
roleRef:
  kind: ClusterRole
  name: pod-reader
  apiGroup: rbac.authorization.k8s.io
---
apiVersion: rbac.authorization.k8s.io/v1
kind: RoleBinding
metadata:
  name: runner-reads-pods
  namespace: project
subjects:
- kind: ServiceAccount
  name: runner
roleRef:
  kind: ClusterRole
  name: pod-reader
  apiGroup: rbac.authorization.k8s.io
"""


def test_who_can_skips_service_accounts_without_a_namespace():
    authorizer = Authorizer(policy_from_text(NAMESPACELESS_SERVICE_ACCOUNTS), privileged_groups=())
    attrs = ResourceAttributes(verb="get", resource="pods", namespace="project")

    grants = authorizer.who_can(attrs)

    assert [(str(g.subject), g.binding.name) for g in grants] == [
        ("ServiceAccount/ci/builder", "builders-read-pods"),
        ("ServiceAccount/?/runner", "runner-reads-pods"),
    ]
    # who-can and can-i agree on every subject
    assert authorizer.authorize(service_account_user("ci", "builder"), attrs).allowed
    assert authorizer.authorize(service_account_user("project", "runner"), attrs).allowed
    assert not authorizer.authorize(service_account_user("default", "builder"), attrs).allowed
