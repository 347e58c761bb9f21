import logging
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from kubernetes import config
from kubernetes.client import ApiClient
from kubernetes.client import CoreV1Api
from kubernetes.client import RbacAuthorizationV1Api
from kubernetes.client import V1ClusterRole
from kubernetes.client import V1ClusterRoleBinding
from kubernetes.client import V1ConfigMap
from kubernetes.client import V1Role
from kubernetes.client import V1RoleBinding
from kubernetes.client.exceptions import ApiException

from rbaclab.intel.eks import add_aws_auth_to_policy
from rbaclab.intel.eks import parse_aws_auth_mappings
from rbaclab.intel.manifests import AWS_AUTH_NAME
from rbaclab.intel.manifests import AWS_AUTH_NAMESPACE
from rbaclab.intel.manifests import parse_rbac_object
from rbaclab.models.rbac import RbacPolicy
from rbaclab.util import timeit

logger = logging.getLogger(__name__)

RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"
PAGE_SIZE = 100


class KubernetesContextNotFound(Exception):
    pass


class K8CoreApiClient(CoreV1Api):
    def __init__(self, name: str, config_file: str, api_client: Optional[ApiClient] = None) -> None:
        self.name = name
        if not api_client:
            api_client = config.new_client_from_config(context=name, config_file=config_file)
        super().__init__(api_client=api_client)


class K8RbacApiClient(RbacAuthorizationV1Api):
    def __init__(self, name: str, config_file: str, api_client: Optional[ApiClient] = None) -> None:
        self.name = name
        if not api_client:
            api_client = config.new_client_from_config(context=name, config_file=config_file)
        super().__init__(api_client=api_client)


class K8sClient:
    def __init__(self, name: str, config_file: str, external_id: Optional[str] = None) -> None:
        self.name = name
        self.config_file = config_file
        self.external_id = external_id
        self.core = K8CoreApiClient(self.name, self.config_file)
        self.rbac = K8RbacApiClient(self.name, self.config_file)


def get_k8s_clients(kubeconfig: str, context: Optional[str] = None) -> List[K8sClient]:
    contexts, _ = config.list_kube_config_contexts(kubeconfig)  # returns a tuple of (all contexts, current context)
    if not contexts:
        raise KubernetesContextNotFound("No context found in kubeconfig.")
    if context:
        contexts = [c for c in contexts if c["name"] == context]
        if not contexts:
            raise KubernetesContextNotFound(f"Context {context} not found in kubeconfig.")
    clients = list()
    for ctx in contexts:
        clients.append(
            K8sClient(
                ctx["name"],
                kubeconfig,
                external_id=ctx["context"].get("cluster"),
            ),
        )
    return clients


def k8s_paginate(list_func: Callable, **kwargs: Any) -> List[Any]:
    """
    Call a kubernetes list_* function until the server stops returning a continue token.
    """
    all_resources: List[Any] = []
    continue_token = None
    while True:
        if continue_token:
            response = list_func(limit=PAGE_SIZE, _continue=continue_token, **kwargs)
        else:
            response = list_func(limit=PAGE_SIZE, **kwargs)
        all_resources.extend(response.items or [])
        continue_token = response.metadata._continue if response.metadata else None
        if not continue_token:
            break
    return all_resources


@timeit
def get_roles(k8s_client: K8sClient) -> List[V1Role]:
    """
    Get all Roles across all namespaces.
    """
    return k8s_paginate(k8s_client.rbac.list_role_for_all_namespaces)


@timeit
def get_cluster_roles(k8s_client: K8sClient) -> List[V1ClusterRole]:
    return k8s_paginate(k8s_client.rbac.list_cluster_role)


@timeit
def get_role_bindings(k8s_client: K8sClient) -> List[V1RoleBinding]:
    """
    Get all RoleBindings across all namespaces.
    """
    return k8s_paginate(k8s_client.rbac.list_role_binding_for_all_namespaces)


@timeit
def get_cluster_role_bindings(k8s_client: K8sClient) -> List[V1ClusterRoleBinding]:
    return k8s_paginate(k8s_client.rbac.list_cluster_role_binding)


@timeit
def get_aws_auth_configmap(k8s_client: K8sClient) -> Optional[V1ConfigMap]:
    """
    Get aws-auth ConfigMap from kube-system namespace. Clusters that are not EKS (or that use
    EKS access entries only) have none, which is not an error.
    """
    logger.info(f"Retrieving aws-auth ConfigMap from cluster {k8s_client.name}")
    try:
        return k8s_client.core.read_namespaced_config_map(name=AWS_AUTH_NAME, namespace=AWS_AUTH_NAMESPACE)
    except ApiException as e:
        if e.status == 404:
            logger.info(f"No aws-auth ConfigMap in cluster {k8s_client.name}")
            return None
        raise


def to_manifest(obj: Any, kind: str, api_client: ApiClient) -> Dict[str, Any]:
    """
    Serialise a kubernetes client model into the camelCase dict shape of a manifest.
    List responses do not carry kind/apiVersion on their items, so set them here.
    """
    body = api_client.sanitize_for_serialization(obj)
    body["kind"] = kind
    body["apiVersion"] = RBAC_API_VERSION
    return body


@timeit
def build_policy_from_cluster(k8s_client: K8sClient) -> RbacPolicy:
    logger.info(f"Reading RBAC objects from cluster {k8s_client.name}")
    policy = RbacPolicy()
    api_client = k8s_client.rbac.api_client

    for kind, items in (
        ("Role", get_roles(k8s_client)),
        ("ClusterRole", get_cluster_roles(k8s_client)),
        ("RoleBinding", get_role_bindings(k8s_client)),
        ("ClusterRoleBinding", get_cluster_role_bindings(k8s_client)),
    ):
        for item in items:
            policy.add(parse_rbac_object(to_manifest(item, kind, api_client)))

    configmap = get_aws_auth_configmap(k8s_client)
    if configmap is not None:
        add_aws_auth_to_policy(policy, parse_aws_auth_mappings(configmap.data or {}))

    policy.resolve_aggregation()
    logger.info(f"Read {policy.summary()} from cluster {k8s_client.name}")
    return policy
