"""
Load Kubernetes RBAC manifests, aws-auth ConfigMaps and eksctl ClusterConfig files from disk.

Files may hold several YAML documents separated by `---`, and `List` kinds are flattened.
Documents of kinds that carry no authorization data (Deployments, Services, ...) are skipped.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

import yaml

from rbaclab.intel.eks import add_aws_auth_to_policy
from rbaclab.intel.eks import parse_aws_auth_mappings
from rbaclab.intel.eks import parse_eksctl_identity_mappings
from rbaclab.models.rbac import ClusterRole
from rbaclab.models.rbac import ClusterRoleBinding
from rbaclab.models.rbac import PolicyRule
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import Role
from rbaclab.models.rbac import RoleBinding
from rbaclab.models.rbac import RoleRef
from rbaclab.models.rbac import Subject
from rbaclab.util import timeit

logger = logging.getLogger(__name__)

RBAC_API_VERSIONS = ("rbac.authorization.k8s.io/v1", "rbac.authorization.k8s.io/v1beta1")
RBAC_KINDS = ("Role", "ClusterRole", "RoleBinding", "ClusterRoleBinding")
EKSCTL_API_VERSIONS = ("eksctl.io/v1alpha5",)
MANIFEST_EXTENSIONS = (".yaml", ".yml")
SELECTOR_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")

AWS_AUTH_NAME = "aws-auth"
AWS_AUTH_NAMESPACE = "kube-system"
DEFAULT_NAMESPACE = "default"


class ManifestError(Exception):
    def __init__(self, message: str, source: str = "<memory>", index: Optional[int] = None) -> None:
        self.source = source
        self.index = index
        location = source if index is None else f"{source} (document {index})"
        super().__init__(f"{location}: {message}")


@dataclass(frozen=True)
class ManifestDocument:
    body: Dict[str, Any]
    source: str
    index: int

    @property
    def kind(self) -> str:
        return self.body.get("kind") or ""

    @property
    def api_version(self) -> str:
        return self.body.get("apiVersion") or ""


def _string_list(value: Any, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ValueError(f"{field_name} must be a list, got {type(value).__name__}")
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"{field_name} entries must be strings, got {item!r}")
    return tuple(value)


def _metadata(body: Dict[str, Any]) -> Dict[str, Any]:
    metadata = body.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise ValueError("metadata.name is required")
    return metadata


def parse_rule(raw: Any) -> PolicyRule:
    if not isinstance(raw, dict):
        raise ValueError(f"rules entries must be mappings, got {raw!r}")
    verbs = _string_list(raw.get("verbs"), "verbs")
    if not verbs:
        raise ValueError("every rule needs at least one verb")
    non_resource_urls = _string_list(raw.get("nonResourceURLs"), "nonResourceURLs")
    resources = _string_list(raw.get("resources"), "resources")
    if non_resource_urls and resources:
        raise ValueError("a rule cannot mix resources and nonResourceURLs")
    return PolicyRule(
        verbs=verbs,
        api_groups=_string_list(raw.get("apiGroups"), "apiGroups"),
        resources=resources,
        resource_names=_string_list(raw.get("resourceNames"), "resourceNames"),
        non_resource_urls=non_resource_urls,
    )


def parse_rules(raw: Any) -> Tuple[PolicyRule, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError(f"rules must be a list, got {type(raw).__name__}")
    return tuple(parse_rule(rule) for rule in raw)


def parse_subject(raw: Any) -> Subject:
    if not isinstance(raw, dict):
        raise ValueError(f"subjects entries must be mappings, got {raw!r}")
    if not raw.get("kind") or not raw.get("name"):
        raise ValueError(f"subjects need a kind and a name, got {raw}")
    return Subject(
        kind=raw["kind"],
        name=raw["name"],
        namespace=raw.get("namespace"),
        api_group=raw.get("apiGroup") or "",
    )


def parse_role_ref(raw: Any) -> RoleRef:
    if not isinstance(raw, dict):
        raise ValueError("roleRef is required")
    if not raw.get("kind") or not raw.get("name"):
        raise ValueError(f"roleRef needs a kind and a name, got {raw}")
    return RoleRef(kind=raw["kind"], name=raw["name"], api_group=raw.get("apiGroup") or "")


def parse_label_selector(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError(f"clusterRoleSelectors entries must be mappings, got {raw!r}")
    match_labels = raw.get("matchLabels") or {}
    if not isinstance(match_labels, dict):
        raise ValueError(f"matchLabels must be a mapping, got {type(match_labels).__name__}")
    expressions = raw.get("matchExpressions") or []
    if not isinstance(expressions, list):
        raise ValueError(f"matchExpressions must be a list, got {type(expressions).__name__}")
    for expression in expressions:
        if not isinstance(expression, dict) or not expression.get("key"):
            raise ValueError(f"matchExpressions entries need a key, got {expression!r}")
        operator = expression.get("operator")
        if operator not in SELECTOR_OPERATORS:
            raise ValueError(f"unsupported label selector operator {operator!r}")
        values = _string_list(expression.get("values"), "matchExpressions values")
        if operator in ("In", "NotIn") and not values:
            raise ValueError(f"operator {operator} needs at least one value")
    return raw


def parse_aggregation_selectors(raw: Any) -> Tuple[Dict[str, Any], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, dict):
        raise ValueError(f"aggregationRule must be a mapping, got {type(raw).__name__}")
    selectors = raw.get("clusterRoleSelectors") or []
    if not isinstance(selectors, list):
        raise ValueError("aggregationRule.clusterRoleSelectors must be a list")
    return tuple(parse_label_selector(selector) for selector in selectors)


def parse_rbac_object(body: Dict[str, Any]) -> Union[Role, ClusterRole, RoleBinding, ClusterRoleBinding]:
    """
    Build a model object from a Role, ClusterRole, RoleBinding or ClusterRoleBinding body
    (camelCase keys, as in manifests and in the API's JSON).
    """
    kind = body.get("kind")
    api_version = body.get("apiVersion")
    if api_version not in RBAC_API_VERSIONS:
        raise ValueError(f"unsupported apiVersion {api_version!r} for {kind}")
    metadata = _metadata(body)
    name = metadata["name"]
    namespace = metadata.get("namespace")
    labels = metadata.get("labels") or {}
    if not isinstance(labels, dict):
        raise ValueError(f"metadata.labels must be a mapping, got {type(labels).__name__}")
    labels = dict(labels)

    if kind == "Role":
        return Role(
            name=name,
            namespace=namespace or DEFAULT_NAMESPACE,
            rules=parse_rules(body.get("rules")),
            labels=labels,
        )
    if kind == "ClusterRole":
        if namespace:
            logger.debug(f"Ignoring metadata.namespace on ClusterRole {name}")
        return ClusterRole(
            name=name,
            rules=parse_rules(body.get("rules")),
            labels=labels,
            aggregation_selectors=parse_aggregation_selectors(body.get("aggregationRule")),
        )

    subjects = body.get("subjects") or []
    if not isinstance(subjects, list):
        raise ValueError(f"subjects must be a list, got {type(subjects).__name__}")
    parsed_subjects = tuple(parse_subject(s) for s in subjects)
    role_ref = parse_role_ref(body.get("roleRef"))

    if kind == "RoleBinding":
        return RoleBinding(
            name=name,
            namespace=namespace or DEFAULT_NAMESPACE,
            role_ref=role_ref,
            subjects=parsed_subjects,
        )
    if kind == "ClusterRoleBinding":
        return ClusterRoleBinding(name=name, role_ref=role_ref, subjects=parsed_subjects)
    raise ValueError(f"{kind} is not an RBAC kind")


def is_aws_auth_configmap(body: Dict[str, Any]) -> bool:
    metadata = body.get("metadata") or {}
    return body.get("kind") == "ConfigMap" and metadata.get("name") == AWS_AUTH_NAME


def add_document_to_policy(policy: RbacPolicy, document: ManifestDocument) -> int:
    """
    Parse one manifest document into `policy`. Returns the number of objects added.
    """
    body = document.body
    kind = document.kind
    try:
        if kind in RBAC_KINDS:
            policy.add(parse_rbac_object(body))
            return 1

        if is_aws_auth_configmap(body):
            if document.api_version != "v1":
                raise ValueError(f"unsupported apiVersion {document.api_version!r} for ConfigMap")
            namespace = (body.get("metadata") or {}).get("namespace")
            if namespace != AWS_AUTH_NAMESPACE:
                logger.warning(
                    f"{document.source}: aws-auth ConfigMap in namespace {namespace!r} is ignored by EKS; "
                    f"it must live in {AWS_AUTH_NAMESPACE}"
                )
                return 0
            parsed = parse_aws_auth_mappings(body.get("data") or {})
            before = len(policy.identity_mappings)
            add_aws_auth_to_policy(policy, parsed)
            return len(policy.identity_mappings) - before + len(parsed["accounts"])

        if kind == "ClusterConfig":
            if document.api_version not in EKSCTL_API_VERSIONS:
                raise ValueError(f"unsupported apiVersion {document.api_version!r} for ClusterConfig")
            mappings = parse_eksctl_identity_mappings(body)
            for mapping in mappings:
                policy.add(mapping)
            return len(mappings)
    except ValueError as e:
        raise ManifestError(str(e), document.source, document.index) from e

    logger.debug(f"{document.source}: skipping document {document.index} of kind {kind or '<none>'}")
    return 0


def _flatten(body: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    kind = body.get("kind") or ""
    if kind == "List" or (kind.endswith("List") and "items" in body):
        for item in body.get("items") or []:
            if isinstance(item, dict):
                yield from _flatten(item)
        return
    yield body


def parse_manifest_text(text: str, source: str = "<memory>") -> List[ManifestDocument]:
    try:
        raw_documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML: {e}", source) from e

    documents = []
    for index, raw in enumerate(raw_documents):
        if raw is None:
            continue
        if not isinstance(raw, dict):
            raise ManifestError(f"expected a mapping, got {type(raw).__name__}", source, index)
        for body in _flatten(raw):
            documents.append(ManifestDocument(body=body, source=source, index=index))
    return documents


def _manifest_files(path: str, recursive: bool) -> List[str]:
    if os.path.isfile(path):
        return [path]
    if not os.path.isdir(path):
        raise ManifestError("no such file or directory", path)

    files = []
    if recursive:
        for root, dirs, names in os.walk(path):
            dirs.sort()
            for name in sorted(names):
                if name.endswith(MANIFEST_EXTENSIONS):
                    files.append(os.path.join(root, name))
    else:
        for name in sorted(os.listdir(path)):
            full = os.path.join(path, name)
            if os.path.isfile(full) and name.endswith(MANIFEST_EXTENSIONS):
                files.append(full)
    return files


def load_manifest_documents(path: str, recursive: bool = False) -> List[ManifestDocument]:
    documents = []
    for file_path in _manifest_files(path, recursive):
        try:
            with open(file_path, encoding="utf-8") as f:
                text = f.read()
        except UnicodeDecodeError as e:
            raise ManifestError(f"not valid UTF-8: {e}", file_path) from e
        except OSError as e:
            raise ManifestError(f"cannot read file: {e.strerror or e}", file_path) from e
        documents.extend(parse_manifest_text(text, file_path))
    logger.debug(f"Read {len(documents)} manifest documents from {path}")
    return documents


@timeit
def load_policy(paths: Iterable[str], recursive: bool = False) -> RbacPolicy:
    """
    Build an RbacPolicy from manifest files and directories. ClusterRole aggregation is resolved
    once everything is loaded.
    """
    policy = RbacPolicy()
    for path in paths:
        added = 0
        for document in load_manifest_documents(path, recursive=recursive):
            added += add_document_to_policy(policy, document)
        logger.info(f"Loaded {added} RBAC objects from {path}")
    policy.resolve_aggregation()
    return policy
