from rbaclab.intel.eks import add_aws_auth_to_policy
from rbaclab.intel.eks import parse_aws_auth_mappings
from rbaclab.models.rbac import AwsIdentityMapping
from rbaclab.rules.data.rules import RULES
from tests.data.rbaclab.aws_auth import AWS_AUTH_CONFIGMAP
from tests.data.rbaclab.aws_auth import AWS_AUTH_CONFIGMAP_DATA
from tests.data.rbaclab.manifests import AGGREGATED_ROLES
from tests.data.rbaclab.manifests import BROKEN_BINDINGS
from tests.data.rbaclab.manifests import CLUSTER_READ_ONLY
from tests.data.rbaclab.manifests import PROJECT_READ_ONLY
from tests.unit.rbaclab.helpers import policy_from_text


def _run(rule_id, policy, fact_id=None):
    rule = RULES[rule_id]
    fact = rule.get_fact_by_id(fact_id) if fact_id else rule.facts[0]
    return fact.check(policy)


def test_tutorial_manifests_are_consistent():
    """The Role and ClusterRole manifests reference each other correctly."""
    policy = policy_from_text(PROJECT_READ_ONLY, CLUSTER_READ_ONLY)

    for rule_id in ("rbac_dangling_role_ref", "rbac_role_ref_kind", "rbac_invalid_subject", "rbac_unused_role"):
        assert _run(rule_id, policy) == [], rule_id


def test_dangling_role_ref():
    policy = policy_from_text(PROJECT_READ_ONLY, BROKEN_BINDINGS)

    matches = _run("rbac_dangling_role_ref", policy)

    assert matches == [
        {
            "binding_name": "points-nowhere",
            "binding_type": "RoleBinding",
            "namespace": "project",
            "role_kind": "Role",
            "role_name": "DoesNotExist",
            "issue": "Role DoesNotExist not found in namespace project",
        }
    ]


def test_role_ref_name_is_case_sensitive():
    lowercase_ref = PROJECT_READ_ONLY.replace(
        "  name: ReadOnlyProject\n  apiGroup",
        "  name: readonlyproject\n  apiGroup",
    )
    policy = policy_from_text(lowercase_ref)

    matches = _run("rbac_dangling_role_ref", policy)

    assert [m["role_name"] for m in matches] == ["readonlyproject"]


def test_role_ref_kind():
    policy = policy_from_text(PROJECT_READ_ONLY, BROKEN_BINDINGS)

    matches = _run("rbac_role_ref_kind", policy)

    assert [(m["binding_name"], m["issue"]) for m in matches] == [
        ("cluster-binds-role", "a ClusterRoleBinding can only reference a ClusterRole"),
    ]


def test_role_ref_api_group_must_be_rbac():
    text = """
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRoleBinding
metadata:
  name: odd
roleRef:
  kind: Policy
  name: view
"""
    matches = _run("rbac_role_ref_kind", policy_from_text(text))

    assert [m["issue"] for m in matches] == [
        "roleRef kind must be Role or ClusterRole, got Policy",
        "roleRef apiGroup must be rbac.authorization.k8s.io, got <empty>",
    ]


def test_invalid_subject():
    policy = policy_from_text(PROJECT_READ_ONLY, BROKEN_BINDINGS)

    matches = _run("rbac_invalid_subject", policy)

    assert [(m["subject"], m["issue"]) for m in matches] == [
        ("ServiceAccount/?/builder", "ServiceAccount subjects must have an empty apiGroup"),
    ]


def test_unused_role_skips_aggregated_roles():
    policy = policy_from_text(AGGREGATED_ROLES)

    matches = _run("rbac_unused_role", policy)

    assert matches == [{"role_name": "monitoring-admin", "role_type": "ClusterRole", "namespace": None}]


def test_aws_auth_unbound_groups():
    policy = policy_from_text(PROJECT_READ_ONLY)
    add_aws_auth_to_policy(policy, parse_aws_auth_mappings(AWS_AUTH_CONFIGMAP_DATA))

    matches = _run("aws_auth_unbound_groups", policy)

    assert sorted(m["group"] for m in matches) == [
        "developers",
        "developers",
        "sso-group:{{SessionNameRaw}}",
        "sso-users",
        "templated-group-123456789012",
    ]


def test_aws_auth_groups_bound_by_manifests():
    matches = _run("aws_auth_unbound_groups", policy_from_text(AWS_AUTH_CONFIGMAP))
    assert matches == []


def test_aws_auth_username_case():
    policy = policy_from_text(PROJECT_READ_ONLY)
    policy.add(AwsIdentityMapping(arn="arn:aws:iam::123456789012:user/aravind", kind="user", username="aravind"))
    policy.add(AwsIdentityMapping(arn="arn:aws:iam::123456789012:user/Aravind", kind="user", username="Aravind"))

    matches = _run("aws_auth_unbound_groups", policy, "aws_auth_username_case")

    assert matches == [
        {
            "arn": "arn:aws:iam::123456789012:user/aravind",
            "mapping_type": "user",
            "username": "aravind",
            "issue": "bindings name User Aravind; usernames are case sensitive",
        }
    ]
