import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

logger = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"

SUBJECT_KINDS = ("User", "Group", "ServiceAccount")
ROLE_REF_KINDS = ("Role", "ClusterRole")


@dataclass(frozen=True)
class Subject:
    kind: str
    name: str
    namespace: Optional[str] = None
    api_group: str = ""

    def __str__(self) -> str:
        if self.kind == "ServiceAccount":
            return f"ServiceAccount/{self.namespace or '?'}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class PolicyRule:
    verbs: Tuple[str, ...]
    api_groups: Tuple[str, ...] = ()
    resources: Tuple[str, ...] = ()
    resource_names: Tuple[str, ...] = ()
    non_resource_urls: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.non_resource_urls:
            return f"nonResourceURLs={list(self.non_resource_urls)} verbs={list(self.verbs)}"
        groups = ["core" if g == "" else g for g in self.api_groups]
        text = f"apiGroups={groups} resources={list(self.resources)} verbs={list(self.verbs)}"
        if self.resource_names:
            text += f" resourceNames={list(self.resource_names)}"
        return text


@dataclass(frozen=True)
class RoleRef:
    kind: str
    name: str
    api_group: str = RBAC_API_GROUP


@dataclass(frozen=True)
class Role:
    name: str
    namespace: str
    rules: Tuple[PolicyRule, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def kind(self) -> str:
        return "Role"

    @property
    def id(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ClusterRole:
    name: str
    rules: Tuple[PolicyRule, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict, hash=False)
    # Each selector is a metav1.LabelSelector dict (matchLabels / matchExpressions).
    aggregation_selectors: Tuple[Dict[str, Any], ...] = field(default=(), hash=False)

    @property
    def kind(self) -> str:
        return "ClusterRole"

    @property
    def id(self) -> str:
        return self.name


@dataclass(frozen=True)
class RoleBinding:
    name: str
    namespace: str
    role_ref: RoleRef
    subjects: Tuple[Subject, ...] = ()

    @property
    def kind(self) -> str:
        return "RoleBinding"

    @property
    def id(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ClusterRoleBinding:
    name: str
    role_ref: RoleRef
    subjects: Tuple[Subject, ...] = ()

    @property
    def kind(self) -> str:
        return "ClusterRoleBinding"

    @property
    def id(self) -> str:
        return self.name


@dataclass(frozen=True)
class AwsIdentityMapping:
    """
    One mapRoles / mapUsers entry of the aws-auth ConfigMap (or an eksctl iamIdentityMapping).
    `username` may still hold {{SessionName}} / {{SessionNameRaw}} placeholders.
    """

    arn: str
    kind: str  # "role" or "user"
    username: str = ""
    groups: Tuple[str, ...] = ()

    @property
    def is_templated(self) -> bool:
        return "{{SessionName}}" in self.username or "{{SessionNameRaw}}" in self.username


@dataclass(frozen=True)
class UserInfo:
    name: str
    groups: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResourceAttributes:
    verb: str
    resource: str
    namespace: str = ""
    api_group: str = ""
    subresource: str = ""
    name: str = ""

    def __str__(self) -> str:
        resource = self.resource
        if self.subresource:
            resource = f"{resource}/{self.subresource}"
        if self.api_group:
            resource = f"{resource}.{self.api_group}"
        if self.name:
            resource = f"{resource}/{self.name}"
        scope = f"namespace {self.namespace}" if self.namespace else "cluster scope"
        return f"{self.verb} {resource} in {scope}"


@dataclass(frozen=True)
class NonResourceAttributes:
    verb: str
    path: str

    def __str__(self) -> str:
        return f"{self.verb} {self.path}"


RequestAttributes = Union[ResourceAttributes, NonResourceAttributes]
PolicyObject = Union[Role, ClusterRole, RoleBinding, ClusterRoleBinding, AwsIdentityMapping]
Binding = Union[RoleBinding, ClusterRoleBinding]


def label_selector_matches(selector: Dict[str, Any], labels: Dict[str, str]) -> bool:
    """
    Evaluate a Kubernetes LabelSelector against a label set. An empty selector matches nothing,
    which is how the clusterrole-aggregation controller treats it.
    """
    match_labels = selector.get("matchLabels") or {}
    match_expressions = selector.get("matchExpressions") or []
    if not match_labels and not match_expressions:
        return False

    for key, value in match_labels.items():
        if labels.get(key) != value:
            return False

    for expression in match_expressions:
        key = expression.get("key")
        operator = expression.get("operator")
        values = expression.get("values") or []
        if operator == "In":
            if labels.get(key) not in values:
                return False
        elif operator == "NotIn":
            if key in labels and labels[key] in values:
                return False
        elif operator == "Exists":
            if key not in labels:
                return False
        elif operator == "DoesNotExist":
            if key in labels:
                return False
        else:
            raise ValueError(f"Unsupported label selector operator: {operator}")
    return True


class RbacPolicy:
    """
    A point-in-time snapshot of RBAC objects and EKS identity mappings.
    Objects added later replace earlier ones with the same identity, like `kubectl apply`.
    """

    def __init__(self) -> None:
        self.roles: Dict[Tuple[str, str], Role] = {}
        self.cluster_roles: Dict[str, ClusterRole] = {}
        self.role_bindings: Dict[Tuple[str, str], RoleBinding] = {}
        self.cluster_role_bindings: Dict[str, ClusterRoleBinding] = {}
        self.identity_mappings: List[AwsIdentityMapping] = []
        self.mapped_accounts: List[str] = []

    def add(self, obj: PolicyObject) -> None:
        if isinstance(obj, Role):
            key = (obj.namespace, obj.name)
            self._warn_replaced(key in self.roles, obj)
            self.roles[key] = obj
        elif isinstance(obj, ClusterRole):
            self._warn_replaced(obj.name in self.cluster_roles, obj)
            self.cluster_roles[obj.name] = obj
        elif isinstance(obj, RoleBinding):
            key = (obj.namespace, obj.name)
            self._warn_replaced(key in self.role_bindings, obj)
            self.role_bindings[key] = obj
        elif isinstance(obj, ClusterRoleBinding):
            self._warn_replaced(obj.name in self.cluster_role_bindings, obj)
            self.cluster_role_bindings[obj.name] = obj
        elif isinstance(obj, AwsIdentityMapping):
            self.identity_mappings.append(obj)
        else:
            raise TypeError(f"Cannot add {type(obj).__name__} to an RbacPolicy")

    def add_mapped_accounts(self, accounts: List[str]) -> None:
        for account in accounts:
            account = str(account)
            if account not in self.mapped_accounts:
                self.mapped_accounts.append(account)

    def merge(self, other: "RbacPolicy") -> None:
        for obj in other.objects():
            self.add(obj)
        self.add_mapped_accounts(other.mapped_accounts)

    def objects(self) -> Iterator[PolicyObject]:
        yield from self.roles.values()
        yield from self.cluster_roles.values()
        yield from self.role_bindings.values()
        yield from self.cluster_role_bindings.values()
        yield from self.identity_mappings

    def bindings(self) -> Iterator[Binding]:
        yield from self.cluster_role_bindings.values()
        yield from self.role_bindings.values()

    def get_role(self, namespace: str, name: str) -> Optional[Role]:
        return self.roles.get((namespace, name))

    def get_cluster_role(self, name: str) -> Optional[ClusterRole]:
        return self.cluster_roles.get(name)

    def resolve_role_ref(self, binding: Binding) -> Optional[Union[Role, ClusterRole]]:
        """
        Return the role a binding points at, or None when it is missing or the reference is invalid.
        A RoleBinding's Role is looked up in the binding's own namespace.
        """
        ref = binding.role_ref
        if ref.kind == "ClusterRole":
            return self.get_cluster_role(ref.name)
        if ref.kind == "Role" and isinstance(binding, RoleBinding):
            return self.get_role(binding.namespace, ref.name)
        return None

    def resolve_aggregation(self) -> None:
        """
        Fill in the rules of aggregated ClusterRoles from the ClusterRoles their selectors match.
        Aggregated roles can themselves be aggregated (admin -> edit -> view), so iterate until stable.
        """
        aggregated = [cr.name for cr in self.cluster_roles.values() if cr.aggregation_selectors]
        if not aggregated:
            return

        for _ in range(len(self.cluster_roles) + 1):
            changed = False
            for name in aggregated:
                cluster_role = self.cluster_roles[name]
                rules: List[PolicyRule] = []
                for candidate in sorted(self.cluster_roles.values(), key=lambda cr: cr.name):
                    if candidate.name == name:
                        continue
                    if any(
                        label_selector_matches(selector, candidate.labels)
                        for selector in cluster_role.aggregation_selectors
                    ):
                        for rule in candidate.rules:
                            if rule not in rules:
                                rules.append(rule)
                if tuple(rules) != cluster_role.rules:
                    self.cluster_roles[name] = replace(cluster_role, rules=tuple(rules))
                    changed = True
            if not changed:
                return
        logger.warning("ClusterRole aggregation did not converge; aggregation rules may be cyclic")

    def summary(self) -> Dict[str, int]:
        return {
            "roles": len(self.roles),
            "cluster_roles": len(self.cluster_roles),
            "role_bindings": len(self.role_bindings),
            "cluster_role_bindings": len(self.cluster_role_bindings),
            "identity_mappings": len(self.identity_mappings),
            "mapped_accounts": len(self.mapped_accounts),
        }

    @staticmethod
    def _warn_replaced(exists: bool, obj: PolicyObject) -> None:
        if exists:
            logger.warning(f"{type(obj).__name__} {obj.id} defined more than once; keeping the last definition")
