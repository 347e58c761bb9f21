"""
Section 5.1 (RBAC and Service Accounts) of the CIS Kubernetes Benchmark v1.12.0, evaluated
against a loaded RbacPolicy.

Roles whose name starts with "system:" ship with Kubernetes and are not reported. Where a
control applies to both scopes, ClusterRoles and Roles get a fact each.
"""

from typing import Any
from typing import Callable
from typing import Iterable
from typing import Iterator
from typing import Union

from rbaclab.authorizer import api_group_matches
from rbaclab.authorizer import resource_matches
from rbaclab.authorizer import verb_matches
from rbaclab.models.rbac import ClusterRole
from rbaclab.models.rbac import ClusterRoleBinding
from rbaclab.models.rbac import PolicyRule
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import Role
from rbaclab.models.rbac import RoleBinding
from rbaclab.rules.spec.model import Fact
from rbaclab.rules.spec.model import Finding
from rbaclab.rules.spec.model import Framework
from rbaclab.rules.spec.model import Maturity
from rbaclab.rules.spec.model import Module
from rbaclab.rules.spec.model import Rule
from rbaclab.rules.spec.model import RuleReference
from rbaclab.util import dedupe

CIS_REFERENCES = (
    RuleReference(
        text="CIS Kubernetes Benchmark v1.12.0",
        url="https://www.cisecurity.org/benchmark/kubernetes",
    ),
    RuleReference(
        text="Kubernetes RBAC Good Practices",
        url="https://kubernetes.io/docs/concepts/security/rbac-good-practices/",
    ),
)

AnyRole = Union[Role, ClusterRole]


def _cis(requirement: str) -> tuple[Framework, ...]:
    return (
        Framework(
            name="CIS Kubernetes Benchmark",
            short_name="CIS",
            scope="kubernetes",
            revision="1.12",
            requirement=requirement,
        ),
    )


def _role_check(
    rule_filter: Callable[[PolicyRule], bool],
    cluster_scoped: bool,
    extra: Callable[[list[PolicyRule]], dict[str, Any]] | None = None,
) -> Callable[[RbacPolicy], list[dict[str, Any]]]:
    """
    Build a fact check reporting user-defined roles with at least one rule passing `rule_filter`.
    Rules are tested one at a time, so a resource from one rule never pairs with a verb from another.
    """

    def check(policy: RbacPolicy) -> list[dict[str, Any]]:
        roles: Iterable[AnyRole] = policy.cluster_roles.values() if cluster_scoped else policy.roles.values()
        matches = []
        for role in roles:
            if role.name.startswith("system:"):
                continue
            granting = [rule for rule in role.rules if rule_filter(rule)]
            if not granting:
                continue
            row = {
                "role_name": role.name,
                "role_type": role.kind,
                "namespace": role.namespace if isinstance(role, Role) else None,
            }
            if extra:
                row.update(extra(granting))
            matches.append(row)
        return matches

    return check


def _grants(
    resource: str,
    verbs: tuple[str, ...],
    api_group: str = "",
    subresource: str = "",
) -> Callable[[PolicyRule], bool]:
    """A rule filter matching what the authorizer would allow for any of `verbs` on the resource."""

    def rule_filter(rule: PolicyRule) -> bool:
        return (
            api_group_matches(rule, api_group)
            and resource_matches(rule, resource, subresource)
            and any(verb_matches(rule, verb) for verb in verbs)
        )

    return rule_filter


def _any_of(*filters: Callable[[PolicyRule], bool]) -> Callable[[PolicyRule], bool]:
    return lambda rule: any(f(rule) for f in filters)


def _verbs_in(verbs: tuple[str, ...]) -> Callable[[list[PolicyRule]], dict[str, Any]]:
    return lambda rules: {"verbs": ", ".join(dedupe(v for rule in rules for v in rule.verbs if v in verbs))}


def _resources_in(resources: tuple[str, ...]) -> Callable[[list[PolicyRule]], dict[str, Any]]:
    return lambda rules: {
        "resources": ", ".join(dedupe(r for rule in rules for r in rule.resources if r in resources))
    }


# =============================================================================
# CIS K8s 5.1.1: cluster-admin role only used where required
# =============================================================================
class ClusterAdminUsageOutput(Finding):
    """Output model for cluster-admin role usage check."""

    binding_name: str | None = None
    subject_type: str | None = None
    subject_name: str | None = None


def _cluster_admin_bindings(policy: RbacPolicy) -> list[dict[str, Any]]:
    matches = []
    for crb in policy.cluster_role_bindings.values():
        if crb.role_ref.name != "cluster-admin":
            continue
        for subject in crb.subjects:
            matches.append(
                {
                    "binding_name": crb.name,
                    "subject_type": subject.kind,
                    "subject_name": subject.name,
                }
            )
    return matches


_k8s_cluster_admin_usage = Fact(
    id="k8s_cluster_admin_usage",
    name="Subjects bound to cluster-admin",
    description=(
        "Lists every subject of a ClusterRoleBinding whose roleRef is cluster-admin. "
        "cluster-admin allows every verb on every resource, so each entry should be justified."
    ),
    check=_cluster_admin_bindings,
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_1_cluster_admin_usage = Rule(
    id="cis_k8s_5_1_1_cluster_admin_usage",
    name="CIS K8s 5.1.1: Cluster-Admin Role Usage",
    description=(
        "Bindings to cluster-admin hand out full control of the cluster. Keep them to the "
        "few identities that operate the cluster itself."
    ),
    output_model=ClusterAdminUsageOutput,
    facts=(_k8s_cluster_admin_usage,),
    tags=("rbac", "cluster-admin", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.1"),
)


# =============================================================================
# CIS K8s 5.1.2: Minimize access to secrets
# =============================================================================
class RoleOutput(Finding):
    """Output model for checks reporting a Role or ClusterRole."""

    role_name: str | None = None
    role_type: str | None = None
    namespace: str | None = None
    verbs: str | None = None
    resources: str | None = None
    wildcard_type: str | None = None


_SECRET_READ_VERBS = ("get", "list", "watch", "*")
_reads_secrets = _grants("secrets", _SECRET_READ_VERBS)


_k8s_secret_access_clusterroles = Fact(
    id="k8s_secret_access_clusterroles",
    name="ClusterRoles that can read secrets",
    description=(
        "ClusterRoles with a rule allowing get, list or watch on secrets, wildcards included. "
        "Bound cluster wide, such a role reads every secret in every namespace."
    ),
    check=_role_check(_reads_secrets, cluster_scoped=True, extra=_verbs_in(_SECRET_READ_VERBS)),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_k8s_secret_access_roles = Fact(
    id="k8s_secret_access_roles",
    name="Roles that can read secrets",
    description="Roles with a rule allowing get, list or watch on secrets, wildcards included.",
    check=_role_check(_reads_secrets, cluster_scoped=False, extra=_verbs_in(_SECRET_READ_VERBS)),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_2_secret_access = Rule(
    id="cis_k8s_5_1_2_secret_access",
    name="CIS K8s 5.1.2: Roles Granting Access to Secrets",
    description=(
        "Secrets hold service account tokens and workload credentials. Reading them is "
        "often enough to take over the identities they belong to."
    ),
    output_model=RoleOutput,
    facts=(_k8s_secret_access_clusterroles, _k8s_secret_access_roles),
    tags=("rbac", "secrets", "stride:information_disclosure"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.2"),
)


# =============================================================================
# CIS K8s 5.1.3: Minimize wildcard use in Roles and ClusterRoles
# =============================================================================
def _has_wildcard(rule: PolicyRule) -> bool:
    return "*" in rule.resources or "*" in rule.verbs


def _wildcard_type(rules: list[PolicyRule]) -> dict[str, Any]:
    in_resources = any("*" in rule.resources for rule in rules)
    in_verbs = any("*" in rule.verbs for rule in rules)
    if in_resources and in_verbs:
        return {"wildcard_type": "resources and verbs"}
    if in_resources:
        return {"wildcard_type": "resources"}
    return {"wildcard_type": "verbs"}


_k8s_wildcard_clusterroles = Fact(
    id="k8s_wildcard_clusterroles",
    name="ClusterRoles using '*' for resources or verbs",
    description=(
        "Detects ClusterRoles that use '*' for resources or verbs. Wildcards grant "
        "access to objects added to the API in the future as well."
    ),
    check=_role_check(_has_wildcard, cluster_scoped=True, extra=_wildcard_type),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_k8s_wildcard_roles = Fact(
    id="k8s_wildcard_roles",
    name="Roles using '*' for resources or verbs",
    description="Detects namespaced Roles that use '*' for resources or verbs.",
    check=_role_check(_has_wildcard, cluster_scoped=False, extra=_wildcard_type),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_3_wildcard_roles = Rule(
    id="cis_k8s_5_1_3_wildcard_roles",
    name="CIS K8s 5.1.3: Wildcard Use in Roles and ClusterRoles",
    description=(
        "A '*' in resources or verbs also covers whatever the API adds later. Spell out "
        "the resources and verbs a role needs."
    ),
    output_model=RoleOutput,
    facts=(_k8s_wildcard_clusterroles, _k8s_wildcard_roles),
    tags=("rbac", "wildcard", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.3"),
)


# =============================================================================
# CIS K8s 5.1.4: Minimize access to create pods
# =============================================================================
_creates_pods = _grants("pods", ("create", "*"))


_k8s_pod_create_clusterroles = Fact(
    id="k8s_pod_create_clusterroles",
    name="ClusterRoles that can create pods",
    description=(
        "Detects ClusterRoles that allow creating pods. Pod creation can be used to "
        "mount secrets and service account tokens of the namespace."
    ),
    check=_role_check(_creates_pods, cluster_scoped=True, extra=_verbs_in(("create", "*"))),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_k8s_pod_create_roles = Fact(
    id="k8s_pod_create_roles",
    name="Roles that can create pods",
    description="Detects namespaced Roles that allow creating pods.",
    check=_role_check(_creates_pods, cluster_scoped=False, extra=_verbs_in(("create", "*"))),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_4_pod_create_access = Rule(
    id="cis_k8s_5_1_4_pod_create_access",
    name="CIS K8s 5.1.4: Roles Granting Pod Creation",
    description=(
        "Whoever can create a pod can run it as any service account of the namespace and "
        "mount any secret there."
    ),
    output_model=RoleOutput,
    facts=(_k8s_pod_create_clusterroles, _k8s_pod_create_roles),
    tags=("rbac", "pods", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.4"),
)


# =============================================================================
# CIS K8s 5.1.5: Ensure that default service accounts are not actively used
# =============================================================================
class BindingSubjectOutput(Finding):
    """Output model for checks reporting a binding subject."""

    binding_name: str | None = None
    binding_type: str | None = None
    namespace: str | None = None
    role_name: str | None = None
    service_account_name: str | None = None
    subject_name: str | None = None
    arn: str | None = None


def _default_sa_subjects(bindings: Iterator[Union[RoleBinding, ClusterRoleBinding]]) -> list[dict[str, Any]]:
    matches = []
    for binding in bindings:
        binding_namespace = binding.namespace if isinstance(binding, RoleBinding) else None
        for subject in binding.subjects:
            if subject.kind != "ServiceAccount" or subject.name != "default":
                continue
            matches.append(
                {
                    "service_account_name": subject.name,
                    "namespace": subject.namespace or binding_namespace,
                    "binding_name": binding.name,
                    "binding_type": binding.kind,
                    "role_name": binding.role_ref.name,
                }
            )
    return matches


_k8s_default_sa_cluster_role_bindings = Fact(
    id="k8s_default_sa_cluster_role_bindings",
    name="default service accounts in ClusterRoleBindings",
    description=(
        "ClusterRoleBindings naming a ServiceAccount called default. Every pod that does not "
        "set serviceAccountName runs as that account and inherits the grant."
    ),
    check=lambda policy: _default_sa_subjects(iter(policy.cluster_role_bindings.values())),
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_k8s_default_sa_role_bindings = Fact(
    id="k8s_default_sa_role_bindings",
    name="default service accounts in RoleBindings",
    description="RoleBindings naming a ServiceAccount called default.",
    check=lambda policy: _default_sa_subjects(iter(policy.role_bindings.values())),
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_5_default_sa_bindings = Rule(
    id="cis_k8s_5_1_5_default_sa_bindings",
    name="CIS K8s 5.1.5: Default Service Accounts Actively Used",
    description=(
        "Grants to default service accounts reach every workload in the namespace. Give "
        "workloads their own service accounts instead. automountServiceAccountToken is not "
        "part of a manifest-only policy and is not checked."
    ),
    output_model=BindingSubjectOutput,
    facts=(_k8s_default_sa_cluster_role_bindings, _k8s_default_sa_role_bindings),
    tags=("rbac", "service-accounts", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.5"),
)


# =============================================================================
# CIS K8s 5.1.7: Avoid use of system:masters group
# =============================================================================
SYSTEM_MASTERS = "system:masters"


def _system_masters_bindings(policy: RbacPolicy) -> list[dict[str, Any]]:
    matches = []
    for binding in policy.bindings():
        for subject in binding.subjects:
            if subject.kind == "Group" and subject.name == SYSTEM_MASTERS:
                matches.append(
                    {
                        "binding_name": binding.name,
                        "binding_type": binding.kind,
                        "namespace": binding.namespace if isinstance(binding, RoleBinding) else None,
                        "role_name": binding.role_ref.name,
                        "subject_name": subject.name,
                    }
                )
    return matches


def _system_masters_mappings(policy: RbacPolicy) -> list[dict[str, Any]]:
    return [
        {
            "binding_name": mapping.username or mapping.arn,
            "binding_type": f"aws-auth map{mapping.kind.capitalize()}s",
            "subject_name": SYSTEM_MASTERS,
            "arn": mapping.arn,
        }
        for mapping in policy.identity_mappings
        if SYSTEM_MASTERS in mapping.groups
    ]


_k8s_system_masters_bindings = Fact(
    id="k8s_system_masters_bindings",
    name="Kubernetes bindings naming the system:masters group",
    description=(
        "Detects bindings with system:masters as a subject. Members of system:masters "
        "bypass RBAC entirely, so such bindings are redundant and signal that the "
        "group is in use."
    ),
    check=_system_masters_bindings,
    asset_id_field="binding_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_eks_system_masters_mappings = Fact(
    id="eks_system_masters_mappings",
    name="aws-auth mappings into system:masters",
    description=(
        "Detects IAM roles and users mapped into system:masters by the aws-auth ConfigMap "
        "or eksctl iamIdentityMappings. Those principals have irrevocable cluster-admin "
        "rights that cannot be reduced with RBAC."
    ),
    check=_system_masters_mappings,
    asset_id_field="arn",
    module=Module.EKS,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_7_system_masters_group = Rule(
    id="cis_k8s_5_1_7_system_masters_group",
    name="CIS K8s 5.1.7: system:masters Group Usage",
    description=(
        "The system:masters group has unrestricted access to the Kubernetes API hard-coded "
        "into the API server source code. Avoid granting it to users or IAM principals."
    ),
    output_model=BindingSubjectOutput,
    facts=(_k8s_system_masters_bindings, _eks_system_masters_mappings),
    tags=("rbac", "system-masters", "eks", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.7"),
)


# =============================================================================
# CIS K8s 5.1.8: Limit use of the Bind, Impersonate and Escalate permissions
# =============================================================================
_ESCALATION_VERBS = ("bind", "impersonate", "escalate", "*")


def _escalates(rule: PolicyRule) -> bool:
    return bool(rule.resources) and any(verb_matches(rule, verb) for verb in _ESCALATION_VERBS)


_k8s_escalation_clusterroles = Fact(
    id="k8s_escalation_clusterroles",
    name="Kubernetes ClusterRoles with bind, impersonate or escalate",
    description=(
        "Detects ClusterRoles granting the bind, impersonate or escalate verbs, which "
        "allow subjects to obtain permissions beyond those they were granted."
    ),
    check=_role_check(_escalates, cluster_scoped=True, extra=_verbs_in(_ESCALATION_VERBS)),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_k8s_escalation_roles = Fact(
    id="k8s_escalation_roles",
    name="Kubernetes Roles with bind, impersonate or escalate",
    description="Detects namespaced Roles granting the bind, impersonate or escalate verbs.",
    check=_role_check(_escalates, cluster_scoped=False, extra=_verbs_in(_ESCALATION_VERBS)),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_8_escalation_permissions = Rule(
    id="cis_k8s_5_1_8_escalation_permissions",
    name="CIS K8s 5.1.8: Bind/Impersonate/Escalate Permissions",
    description=(
        "Cluster roles and roles with the impersonate, bind or escalate permissions "
        "should not be granted unless strictly required."
    ),
    output_model=RoleOutput,
    facts=(_k8s_escalation_clusterroles, _k8s_escalation_roles),
    tags=("rbac", "escalation", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.8"),
)


# =============================================================================
# CIS K8s 5.1.9: Minimize access to create persistent volumes
# =============================================================================
_creates_pvs = _grants("persistentvolumes", ("create", "*"))


_k8s_pv_create_clusterroles = Fact(
    id="k8s_pv_create_clusterroles",
    name="Kubernetes ClusterRoles granting persistent volume creation",
    description=(
        "Detects ClusterRoles that allow creating PersistentVolumes, which can be "
        "used to mount hostPath volumes."
    ),
    check=_role_check(_creates_pvs, cluster_scoped=True, extra=_verbs_in(("create", "*"))),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

_k8s_pv_create_roles = Fact(
    id="k8s_pv_create_roles",
    name="Kubernetes Roles granting persistent volume creation",
    description=(
        "Detects namespaced Roles listing persistentvolumes with create. PersistentVolumes "
        "are cluster scoped, so these rules only take effect through a ClusterRole."
    ),
    check=_role_check(_creates_pvs, cluster_scoped=False, extra=_verbs_in(("create", "*"))),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_9_pv_create_access = Rule(
    id="cis_k8s_5_1_9_pv_create_access",
    name="CIS K8s 5.1.9: Roles Granting Persistent Volume Creation",
    description=(
        "The ability to create persistent volumes can allow privilege escalation "
        "through hostPath mounts."
    ),
    output_model=RoleOutput,
    facts=(_k8s_pv_create_clusterroles, _k8s_pv_create_roles),
    tags=("rbac", "storage", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.9"),
)


# =============================================================================
# CIS K8s 5.1.10: Minimize access to the proxy sub-resource of nodes
# =============================================================================
_NODE_PROXY_VERBS = ("get", "create", "update", "patch", "delete", "*")
_node_proxy = _grants("nodes", _NODE_PROXY_VERBS, subresource="proxy")


_k8s_node_proxy_clusterroles = Fact(
    id="k8s_node_proxy_clusterroles",
    name="Kubernetes ClusterRoles granting nodes/proxy access",
    description=(
        "Detects ClusterRoles granting access to the nodes/proxy sub-resource, "
        "which gives direct access to the Kubelet API."
    ),
    check=_role_check(
        _node_proxy,
        cluster_scoped=True,
        extra=_resources_in(("nodes/proxy", "*/proxy", "*")),
    ),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_10_node_proxy_access = Rule(
    id="cis_k8s_5_1_10_node_proxy_access",
    name="CIS K8s 5.1.10: Node Proxy Sub-Resource Access",
    description=(
        "Users with access to the nodes/proxy sub-resource can bypass audit logging "
        "and admission control by talking to the Kubelet API directly."
    ),
    output_model=RoleOutput,
    facts=(_k8s_node_proxy_clusterroles,),
    tags=("rbac", "nodes", "stride:elevation_of_privilege"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.10"),
)


# =============================================================================
# CIS K8s 5.1.11: Minimize access to the approval sub-resource of CSRs
# =============================================================================
_csr_approval = _grants(
    "certificatesigningrequests",
    ("update", "*"),
    api_group="certificates.k8s.io",
    subresource="approval",
)


_k8s_csr_approval_clusterroles = Fact(
    id="k8s_csr_approval_clusterroles",
    name="Kubernetes ClusterRoles granting CSR approval",
    description=(
        "Detects ClusterRoles that can update certificatesigningrequests/approval, "
        "allowing the holder to approve new client certificates."
    ),
    check=_role_check(_csr_approval, cluster_scoped=True, extra=_verbs_in(("update", "*"))),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_11_csr_approval_access = Rule(
    id="cis_k8s_5_1_11_csr_approval_access",
    name="CIS K8s 5.1.11: CSR Approval Sub-Resource Access",
    description=(
        "Users with access to update the approval sub-resource of certificate signing "
        "requests can issue credentials for any identity, including system:masters."
    ),
    output_model=RoleOutput,
    facts=(_k8s_csr_approval_clusterroles,),
    tags=("rbac", "certificates", "stride:spoofing"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.11"),
)


# =============================================================================
# CIS K8s 5.1.12: Minimize access to webhook configuration objects
# =============================================================================
_WEBHOOK_RESOURCES = ("validatingwebhookconfigurations", "mutatingwebhookconfigurations")
_WEBHOOK_VERBS = ("create", "update", "patch", "delete", "*")
_webhook_config = _any_of(
    *(
        _grants(resource, _WEBHOOK_VERBS, api_group="admissionregistration.k8s.io")
        for resource in _WEBHOOK_RESOURCES
    )
)


def _webhook_details(rules: list[PolicyRule]) -> dict[str, Any]:
    details = _resources_in(_WEBHOOK_RESOURCES + ("*",))(rules)
    details.update(_verbs_in(_WEBHOOK_VERBS)(rules))
    return details


_k8s_webhook_config_clusterroles = Fact(
    id="k8s_webhook_config_clusterroles",
    name="Kubernetes ClusterRoles that can modify webhook configurations",
    description=(
        "Detects ClusterRoles able to create, update, patch or delete validating or "
        "mutating webhook configurations."
    ),
    check=_role_check(
        _webhook_config,
        cluster_scoped=True,
        extra=_webhook_details,
    ),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_12_webhook_config_access = Rule(
    id="cis_k8s_5_1_12_webhook_config_access",
    name="CIS K8s 5.1.12: Webhook Configuration Access",
    description=(
        "Users with rights to modify webhook configurations can read or mutate any "
        "object admitted to the cluster."
    ),
    output_model=RoleOutput,
    facts=(_k8s_webhook_config_clusterroles,),
    tags=("rbac", "admission", "stride:tampering"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.12"),
)


# =============================================================================
# CIS K8s 5.1.13: Minimize access to the service account token creation
# =============================================================================
_sa_token = _grants("serviceaccounts", ("create", "*"), subresource="token")


_k8s_sa_token_clusterroles = Fact(
    id="k8s_sa_token_clusterroles",
    name="Kubernetes ClusterRoles granting service account token creation",
    description=(
        "Detects ClusterRoles able to create tokens for service accounts, which lets "
        "the holder act as any service account in scope."
    ),
    check=_role_check(_sa_token, cluster_scoped=True, extra=_verbs_in(("create", "*"))),
    asset_id_field="role_name",
    module=Module.KUBERNETES,
    maturity=Maturity.EXPERIMENTAL,
)

cis_k8s_5_1_13_sa_token_creation = Rule(
    id="cis_k8s_5_1_13_sa_token_creation",
    name="CIS K8s 5.1.13: Service Account Token Creation Access",
    description=(
        "Users with rights to create new service account tokens at a cluster level "
        "can create long-lived privileged credentials."
    ),
    output_model=RoleOutput,
    facts=(_k8s_sa_token_clusterroles,),
    tags=("rbac", "service-accounts", "stride:spoofing"),
    version="1.0.0",
    references=CIS_REFERENCES,
    frameworks=_cis("5.1.13"),
)
