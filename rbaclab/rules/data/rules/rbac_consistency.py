"""
Consistency checks for RBAC manifests.

These catch manifests that `kubectl apply` accepts (or rejects late) but that do not grant what
their author meant: bindings pointing at roles that do not exist, roleRef kinds that cannot work,
malformed subjects, and aws-auth mappings into groups nothing binds.
"""

from typing import Any

from rbaclab.models.rbac import RBAC_API_GROUP
from rbaclab.models.rbac import ROLE_REF_KINDS
from rbaclab.models.rbac import SUBJECT_KINDS
from rbaclab.models.rbac import ClusterRoleBinding
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import RoleBinding
from rbaclab.models.rbac import label_selector_matches
from rbaclab.rules.spec.model import Fact
from rbaclab.rules.spec.model import Finding
from rbaclab.rules.spec.model import Maturity
from rbaclab.rules.spec.model import Module
from rbaclab.rules.spec.model import Rule
from rbaclab.rules.spec.model import RuleReference

RBAC_REFERENCES = (
    RuleReference(
        text="Kubernetes RBAC Authorization",
        url="https://kubernetes.io/docs/reference/access-authn-authz/rbac/",
    ),
)

EKS_REFERENCES = (
    RuleReference(
        text="Amazon EKS: Grant IAM users access to Kubernetes with a ConfigMap",
        url="https://docs.aws.amazon.com/eks/latest/userguide/auth-configmap.html",
    ),
)


class BindingIssueOutput(Finding):
    """Output model for binding consistency checks."""

    binding_name: str | None = None
    binding_type: str | None = None
    namespace: str | None = None
    role_kind: str | None = None
    role_name: str | None = None
    subject: str | None = None
    issue: str | None = None


def _binding_row(binding: RoleBinding | ClusterRoleBinding, **extra: Any) -> dict[str, Any]:
    row = {
        "binding_name": binding.name,
        "binding_type": binding.kind,
        "namespace": binding.namespace if isinstance(binding, RoleBinding) else None,
        "role_kind": binding.role_ref.kind,
        "role_name": binding.role_ref.name,
    }
    row.update(extra)
    return row


# =============================================================================
# roleRef must point at an existing role
# =============================================================================
def _dangling_role_refs(policy: RbacPolicy) -> list[dict[str, Any]]:
    matches = []
    for binding in policy.bindings():
        if binding.role_ref.kind not in ROLE_REF_KINDS:
            continue
        if isinstance(binding, ClusterRoleBinding) and binding.role_ref.kind == "Role":
            continue
        if policy.resolve_role_ref(binding) is None:
            where = (
                f"namespace {binding.namespace}"
                if isinstance(binding, RoleBinding) and binding.role_ref.kind == "Role"
                else "the cluster"
            )
            matches.append(
                _binding_row(binding, issue=f"{binding.role_ref.kind} {binding.role_ref.name} not found in {where}")
            )
    return matches


_rbac_dangling_role_ref = Fact(
    id="rbac_dangling_role_ref",
    name="Bindings referencing roles that do not exist",
    description=(
        "Detects RoleBindings and ClusterRoleBindings whose roleRef names a Role or "
        "ClusterRole that is not defined. Names are case sensitive, and a RoleBinding "
        "only sees Roles in its own namespace."
    ),
    check=_dangling_role_refs,
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.STABLE,
)

rbac_dangling_role_ref = Rule(
    id="rbac_dangling_role_ref",
    name="Dangling roleRef",
    description="A binding grants nothing when the role it references does not exist.",
    output_model=BindingIssueOutput,
    facts=(_rbac_dangling_role_ref,),
    tags=("rbac", "lint"),
    version="1.0.0",
    references=RBAC_REFERENCES,
)


# =============================================================================
# roleRef kind and apiGroup
# =============================================================================
def _role_ref_kind_issues(policy: RbacPolicy) -> list[dict[str, Any]]:
    matches = []
    for binding in policy.bindings():
        ref = binding.role_ref
        if ref.kind not in ROLE_REF_KINDS:
            matches.append(_binding_row(binding, issue=f"roleRef kind must be Role or ClusterRole, got {ref.kind}"))
        elif isinstance(binding, ClusterRoleBinding) and ref.kind == "Role":
            matches.append(_binding_row(binding, issue="a ClusterRoleBinding can only reference a ClusterRole"))
        if ref.api_group != RBAC_API_GROUP:
            matches.append(
                _binding_row(
                    binding,
                    issue=f"roleRef apiGroup must be {RBAC_API_GROUP}, got {ref.api_group or '<empty>'}",
                )
            )
    return matches


_rbac_role_ref_kind = Fact(
    id="rbac_role_ref_kind",
    name="Bindings with an invalid roleRef",
    description=(
        "Detects roleRef kinds other than Role/ClusterRole, ClusterRoleBindings pointing "
        "at a namespaced Role, and roleRefs outside the rbac.authorization.k8s.io group. "
        "The API server rejects these bindings."
    ),
    check=_role_ref_kind_issues,
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.STABLE,
)

rbac_role_ref_kind = Rule(
    id="rbac_role_ref_kind",
    name="Invalid roleRef",
    description="roleRef must name a Role or ClusterRole in rbac.authorization.k8s.io.",
    output_model=BindingIssueOutput,
    facts=(_rbac_role_ref_kind,),
    tags=("rbac", "lint"),
    version="1.0.0",
    references=RBAC_REFERENCES,
)


# =============================================================================
# Subjects
# =============================================================================
def _subject_issues(policy: RbacPolicy) -> list[dict[str, Any]]:
    matches = []
    for binding in policy.bindings():
        for subject in binding.subjects:
            issue = None
            if subject.kind not in SUBJECT_KINDS:
                issue = f"unknown subject kind {subject.kind}"
            elif subject.kind == "ServiceAccount":
                if subject.api_group:
                    issue = "ServiceAccount subjects must have an empty apiGroup"
                elif not subject.namespace and isinstance(binding, ClusterRoleBinding):
                    issue = "ServiceAccount subjects of a ClusterRoleBinding need a namespace"
            elif subject.api_group and subject.api_group != RBAC_API_GROUP:
                issue = f"{subject.kind} subjects must use apiGroup {RBAC_API_GROUP}"
            if issue:
                matches.append(_binding_row(binding, subject=str(subject), issue=issue))
    return matches


_rbac_invalid_subject = Fact(
    id="rbac_invalid_subject",
    name="Binding subjects that can never match",
    description=(
        "Detects subjects with an unknown kind, a wrong apiGroup, or a ServiceAccount "
        "without a namespace on a ClusterRoleBinding."
    ),
    check=_subject_issues,
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.STABLE,
)

rbac_invalid_subject = Rule(
    id="rbac_invalid_subject",
    name="Invalid binding subject",
    description="Subjects must be a User, Group or namespaced ServiceAccount.",
    output_model=BindingIssueOutput,
    facts=(_rbac_invalid_subject,),
    tags=("rbac", "lint"),
    version="1.0.0",
    references=RBAC_REFERENCES,
)


# =============================================================================
# Roles nobody binds
# =============================================================================
class UnusedRoleOutput(Finding):
    role_name: str | None = None
    role_type: str | None = None
    namespace: str | None = None


def _unused_roles(policy: RbacPolicy) -> list[dict[str, Any]]:
    referenced_roles = set()
    referenced_cluster_roles = set()
    for binding in policy.bindings():
        if binding.role_ref.kind == "ClusterRole":
            referenced_cluster_roles.add(binding.role_ref.name)
        elif isinstance(binding, RoleBinding):
            referenced_roles.add((binding.namespace, binding.role_ref.name))

    aggregators = [cr for cr in policy.cluster_roles.values() if cr.aggregation_selectors]

    matches = []
    for key, role in sorted(policy.roles.items()):
        if key not in referenced_roles:
            matches.append({"role_name": role.name, "role_type": "Role", "namespace": role.namespace})
    for name, cluster_role in sorted(policy.cluster_roles.items()):
        if name in referenced_cluster_roles or name.startswith("system:"):
            continue
        aggregated = any(
            label_selector_matches(selector, cluster_role.labels)
            for aggregator in aggregators
            if aggregator.name != name
            for selector in aggregator.aggregation_selectors
        )
        if not aggregated:
            matches.append({"role_name": name, "role_type": "ClusterRole", "namespace": None})
    return matches


_rbac_unused_role = Fact(
    id="rbac_unused_role",
    name="Roles no binding references",
    description=(
        "Detects Roles and ClusterRoles that no binding references and that are not "
        "aggregated into another ClusterRole. They grant nothing until bound."
    ),
    check=_unused_roles,
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

rbac_unused_role = Rule(
    id="rbac_unused_role",
    name="Unused role",
    description="Roles that nothing binds are dead configuration or a missing RoleBinding.",
    output_model=UnusedRoleOutput,
    facts=(_rbac_unused_role,),
    tags=("rbac", "lint"),
    version="1.0.0",
    references=RBAC_REFERENCES,
)


# =============================================================================
# aws-auth mappings that grant nothing
# =============================================================================
class AwsAuthMappingOutput(Finding):
    arn: str | None = None
    mapping_type: str | None = None
    username: str | None = None
    group: str | None = None
    issue: str | None = None


def _bound_names(policy: RbacPolicy, kind: str) -> set[str]:
    return {s.name for b in policy.bindings() for s in b.subjects if s.kind == kind}


def _unbound_mapping_groups(policy: RbacPolicy) -> list[dict[str, Any]]:
    bound_groups = _bound_names(policy, "Group")
    matches = []
    for mapping in policy.identity_mappings:
        for group in mapping.groups:
            # system: groups are bound by the cluster's bootstrap policy, which manifests do not carry.
            if group.startswith("system:") or group in bound_groups:
                continue
            matches.append(
                {
                    "arn": mapping.arn,
                    "mapping_type": mapping.kind,
                    "username": mapping.username,
                    "group": group,
                    "issue": f"no binding has Group {group} as a subject",
                }
            )
    return matches


def _username_case_mismatches(policy: RbacPolicy) -> list[dict[str, Any]]:
    bound_users = _bound_names(policy, "User")
    lowered = {name.lower(): name for name in bound_users}
    matches = []
    for mapping in policy.identity_mappings:
        if not mapping.username or mapping.is_templated or mapping.username in bound_users:
            continue
        bound = lowered.get(mapping.username.lower())
        if bound is not None:
            matches.append(
                {
                    "arn": mapping.arn,
                    "mapping_type": mapping.kind,
                    "username": mapping.username,
                    "issue": f"bindings name User {bound}; usernames are case sensitive",
                }
            )
    return matches


_aws_auth_unbound_groups = Fact(
    id="aws_auth_unbound_groups",
    name="aws-auth groups no binding references",
    description=(
        "Detects groups granted by aws-auth mapRoles/mapUsers (or eksctl iamIdentityMappings) "
        "that no RoleBinding or ClusterRoleBinding names, so the mapping grants nothing."
    ),
    check=_unbound_mapping_groups,
    asset_id_field="arn",
    module=Module.EKS,
    maturity=Maturity.EXPERIMENTAL,
)

_aws_auth_username_case = Fact(
    id="aws_auth_username_case",
    name="aws-auth usernames that differ from bound users only by case",
    description=(
        "Detects aws-auth usernames that match a bound User only case-insensitively. "
        "Kubernetes compares usernames exactly, so the binding never applies."
    ),
    check=_username_case_mismatches,
    asset_id_field="arn",
    module=Module.EKS,
    maturity=Maturity.STABLE,
)

aws_auth_unbound_groups = Rule(
    id="aws_auth_unbound_groups",
    name="aws-auth mappings that grant nothing",
    description=(
        "IAM principals mapped into groups or usernames that no binding refers to can "
        "authenticate but are denied everything."
    ),
    output_model=AwsAuthMappingOutput,
    facts=(_aws_auth_unbound_groups, _aws_auth_username_case),
    tags=("eks", "aws-auth", "lint"),
    version="1.0.0",
    references=EKS_REFERENCES,
)
