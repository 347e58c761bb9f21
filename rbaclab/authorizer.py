"""
Offline evaluation of Kubernetes RBAC.

Answers the same question the API server's RBAC authorizer answers, using a loaded RbacPolicy:
is there a binding, applying to this user, whose role carries a rule matching the request?
RBAC is purely additive, so the first matching rule allows and no rule ever denies.
"""

import logging
from dataclasses import dataclass
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

from rbaclab.intel.eks import AUTHENTICATED_GROUP
from rbaclab.models.rbac import Binding
from rbaclab.models.rbac import ClusterRole
from rbaclab.models.rbac import NonResourceAttributes
from rbaclab.models.rbac import PolicyRule
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import RequestAttributes
from rbaclab.models.rbac import ResourceAttributes
from rbaclab.models.rbac import Role
from rbaclab.models.rbac import RoleBinding
from rbaclab.models.rbac import Subject
from rbaclab.models.rbac import UserInfo
from rbaclab.util import dedupe

logger = logging.getLogger(__name__)

ALL = "*"
SERVICE_ACCOUNT_PREFIX = "system:serviceaccount:"
SERVICE_ACCOUNTS_GROUP = "system:serviceaccounts"


def service_account_username(namespace: str, name: str) -> str:
    return f"{SERVICE_ACCOUNT_PREFIX}{namespace}:{name}"


def service_account_user(namespace: str, name: str) -> UserInfo:
    return UserInfo(
        name=service_account_username(namespace, name),
        groups=(
            SERVICE_ACCOUNTS_GROUP,
            f"{SERVICE_ACCOUNTS_GROUP}:{namespace}",
            AUTHENTICATED_GROUP,
        ),
    )


def make_user(name: str, groups: Sequence[str] = ()) -> UserInfo:
    """
    Build the identity for an impersonated username. Like API server impersonation, service account
    usernames get their service account groups, and every user is in system:authenticated.
    """
    all_groups = list(groups)
    if name.startswith(SERVICE_ACCOUNT_PREFIX):
        parts = name[len(SERVICE_ACCOUNT_PREFIX):].split(":")
        if len(parts) == 2 and all(parts):
            all_groups.extend(service_account_user(parts[0], parts[1]).groups)
    if AUTHENTICATED_GROUP not in all_groups:
        all_groups.append(AUTHENTICATED_GROUP)
    return UserInfo(name=name, groups=tuple(dedupe(all_groups)))


def subject_matches(subject: Subject, user: UserInfo, binding_namespace: str = "") -> bool:
    if subject.kind == "User":
        return subject.name == user.name
    if subject.kind == "Group":
        return subject.name in user.groups
    if subject.kind == "ServiceAccount":
        # Bindings may leave the namespace off service accounts in their own namespace.
        namespace = subject.namespace or binding_namespace
        if not namespace:
            return False
        return service_account_username(namespace, subject.name) == user.name
    return False


def verb_matches(rule: PolicyRule, verb: str) -> bool:
    return ALL in rule.verbs or verb in rule.verbs


def api_group_matches(rule: PolicyRule, api_group: str) -> bool:
    return ALL in rule.api_groups or api_group in rule.api_groups


def resource_matches(rule: PolicyRule, resource: str, subresource: str = "") -> bool:
    combined = f"{resource}/{subresource}" if subresource else resource
    for rule_resource in rule.resources:
        if rule_resource == ALL or rule_resource == combined:
            return True
        if not subresource:
            continue
        if rule_resource == f"*/{subresource}":
            return True
    return False


def resource_name_matches(rule: PolicyRule, name: str) -> bool:
    if not rule.resource_names:
        return True
    return name in rule.resource_names


def non_resource_url_matches(rule: PolicyRule, path: str) -> bool:
    for url in rule.non_resource_urls:
        if url == ALL or url == path:
            return True
        if url.endswith(ALL) and path.startswith(url[:-1]):
            return True
    return False


def rule_allows(rule: PolicyRule, attrs: RequestAttributes) -> bool:
    if isinstance(attrs, NonResourceAttributes):
        return verb_matches(rule, attrs.verb) and non_resource_url_matches(rule, attrs.path)
    return (
        verb_matches(rule, attrs.verb)
        and api_group_matches(rule, attrs.api_group)
        and resource_matches(rule, attrs.resource, attrs.subresource)
        and resource_name_matches(rule, attrs.name)
    )


@dataclass(frozen=True)
class Grant:
    """A rule that applies to a user, and the binding and role it came through."""

    binding: Binding
    role: Union[Role, ClusterRole]
    rule: PolicyRule

    @property
    def namespace(self) -> str:
        return self.binding.namespace if isinstance(self.binding, RoleBinding) else ""


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    grant: Optional[Grant] = None
    missing_role_refs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SubjectGrant:
    subject: Subject
    binding: Optional[Binding]
    role: Optional[Union[Role, ClusterRole]]


def _describe_binding(binding: Binding) -> str:
    if isinstance(binding, RoleBinding):
        return f'RoleBinding "{binding.name}" in namespace "{binding.namespace}"'
    return f'ClusterRoleBinding "{binding.name}"'


class Authorizer:
    def __init__(self, policy: RbacPolicy, privileged_groups: Iterable[str] = ("system:masters",)) -> None:
        self.policy = policy
        self.privileged_groups = tuple(privileged_groups)

    def _bindings_for_namespace(self, namespace: str) -> Iterator[Binding]:
        """ClusterRoleBindings always apply; RoleBindings only to requests in their namespace."""
        yield from self.policy.cluster_role_bindings.values()
        if not namespace:
            return
        for binding in self.policy.role_bindings.values():
            if binding.namespace == namespace:
                yield binding

    def _applicable(
        self,
        user: UserInfo,
        namespace: str,
        missing: List[str],
    ) -> Iterator[Tuple[Binding, Union[Role, ClusterRole]]]:
        for binding in self._bindings_for_namespace(namespace):
            binding_namespace = binding.namespace if isinstance(binding, RoleBinding) else ""
            if not any(subject_matches(s, user, binding_namespace) for s in binding.subjects):
                continue
            role = self.policy.resolve_role_ref(binding)
            if role is None:
                missing.append(
                    f"{_describe_binding(binding)} references missing {binding.role_ref.kind} "
                    f'"{binding.role_ref.name}"'
                )
                continue
            yield binding, role

    def authorize(self, user: UserInfo, attrs: RequestAttributes) -> Decision:
        privileged = [g for g in user.groups if g in self.privileged_groups]
        if privileged:
            return Decision(allowed=True, reason=f'allowed: member of privileged group "{privileged[0]}"')

        namespace = attrs.namespace if isinstance(attrs, ResourceAttributes) else ""
        missing: List[str] = []
        for binding, role in self._applicable(user, namespace, missing):
            for rule in role.rules:
                if rule_allows(rule, attrs):
                    reason = (
                        f'RBAC: allowed by {_describe_binding(binding)} of {role.kind} "{role.name}" '
                        f'to user "{user.name}"'
                    )
                    logger.debug(reason)
                    return Decision(
                        allowed=True,
                        reason=reason,
                        grant=Grant(binding=binding, role=role, rule=rule),
                        missing_role_refs=tuple(missing),
                    )

        reason = f'RBAC: user "{user.name}" cannot {attrs}'
        if missing:
            reason += "; " + "; ".join(missing)
        return Decision(allowed=False, reason=reason, missing_role_refs=tuple(missing))

    def rules_for(self, user: UserInfo, namespace: str = "") -> List[Grant]:
        """Every rule that applies to the user in the namespace, like `kubectl auth can-i --list`."""
        missing: List[str] = []
        grants = []
        for binding, role in self._applicable(user, namespace, missing):
            for rule in role.rules:
                grants.append(Grant(binding=binding, role=role, rule=rule))
        for message in missing:
            logger.warning(message)
        return grants

    def who_can(self, attrs: RequestAttributes) -> List[SubjectGrant]:
        """
        Subjects named in bindings that would be allowed the request. Members of privileged groups are
        always allowed and are reported with no binding.
        """
        namespace = attrs.namespace if isinstance(attrs, ResourceAttributes) else ""
        result: List[SubjectGrant] = []
        for binding in self._bindings_for_namespace(namespace):
            role = self.policy.resolve_role_ref(binding)
            if role is None:
                continue
            if not any(rule_allows(rule, attrs) for rule in role.rules):
                continue
            binding_namespace = binding.namespace if isinstance(binding, RoleBinding) else ""
            for subject in binding.subjects:
                if subject.kind == "ServiceAccount" and not (subject.namespace or binding_namespace):
                    continue
                result.append(SubjectGrant(subject=subject, binding=binding, role=role))
        for group in self.privileged_groups:
            result.append(SubjectGrant(subject=Subject(kind="Group", name=group), binding=None, role=None))
        return result
