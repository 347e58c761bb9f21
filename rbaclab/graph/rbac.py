import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Union

import neo4j

from rbaclab.client.core.tx import load_graph_data
from rbaclab.client.core.tx import run_write_query
from rbaclab.intel.eks import find_templated_users
from rbaclab.models.rbac import ClusterRole
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import Role
from rbaclab.models.rbac import RoleBinding
from rbaclab.util import dedupe
from rbaclab.util import timeit

logger = logging.getLogger(__name__)

SUBJECT_LABELS = {
    "User": "KubernetesUser",
    "Group": "KubernetesGroup",
    "ServiceAccount": "KubernetesServiceAccount",
}

_CLUSTER_QUERY = """
MERGE (c:KubernetesCluster{id: $CLUSTER_ID})
ON CREATE SET c.firstseen = timestamp()
SET c.name = $CLUSTER_ID, c.lastupdated = $UPDATE_TAG
"""

_ROLE_QUERY = """
UNWIND $DictList AS data
MERGE (r:{label}{{id: data.id}})
ON CREATE SET r.firstseen = timestamp()
SET r.name = data.name,
    r.namespace = data.namespace,
    r.api_groups = data.api_groups,
    r.resources = data.resources,
    r.verbs = data.verbs,
    r.lastupdated = $UPDATE_TAG
WITH r
MATCH (c:KubernetesCluster{{id: $CLUSTER_ID}})
MERGE (c)-[rel:RESOURCE]->(r)
ON CREATE SET rel.firstseen = timestamp()
SET rel.lastupdated = $UPDATE_TAG
"""

_BINDING_QUERY = """
UNWIND $DictList AS data
MERGE (b:{label}{{id: data.id}})
ON CREATE SET b.firstseen = timestamp()
SET b.name = data.name,
    b.namespace = data.namespace,
    b.role_name = data.role_name,
    b.role_kind = data.role_kind,
    b.lastupdated = $UPDATE_TAG
WITH b, data
MATCH (c:KubernetesCluster{{id: $CLUSTER_ID}})
MERGE (c)-[rel:RESOURCE]->(b)
ON CREATE SET rel.firstseen = timestamp()
SET rel.lastupdated = $UPDATE_TAG
WITH b, data
MATCH (role:{role_label}{{id: data.role_id}})
MERGE (b)-[ref:ROLE_REF]->(role)
ON CREATE SET ref.firstseen = timestamp()
SET ref.lastupdated = $UPDATE_TAG
"""

_SUBJECT_QUERY = """
UNWIND $DictList AS data
MERGE (s:{label}{{id: data.subject_id}})
ON CREATE SET s.firstseen = timestamp()
SET s.name = data.subject_name,
    s.namespace = data.subject_namespace,
    s.lastupdated = $UPDATE_TAG
WITH s, data
MATCH (c:KubernetesCluster{{id: $CLUSTER_ID}})
MERGE (c)-[rel:RESOURCE]->(s)
ON CREATE SET rel.firstseen = timestamp()
SET rel.lastupdated = $UPDATE_TAG
WITH s, data
MATCH (b{{id: data.binding_id}})
WHERE b:KubernetesRoleBinding OR b:KubernetesClusterRoleBinding
MERGE (b)-[sub:SUBJECT]->(s)
ON CREATE SET sub.firstseen = timestamp()
SET sub.lastupdated = $UPDATE_TAG
"""

_AWS_MAPPING_QUERY = """
UNWIND $DictList AS data
MERGE (p:{aws_label}{{arn: data.arn}})
ON CREATE SET p.firstseen = timestamp()
SET p.lastupdated = $UPDATE_TAG
WITH p, data
MERGE (k:{k8s_label}{{id: data.target_id}})
ON CREATE SET k.firstseen = timestamp(), k.name = data.target_name
SET k.lastupdated = $UPDATE_TAG
WITH p, k
MATCH (c:KubernetesCluster{{id: $CLUSTER_ID}})
MERGE (c)-[rel:RESOURCE]->(k)
ON CREATE SET rel.firstseen = timestamp()
SET rel.lastupdated = $UPDATE_TAG
MERGE (p)-[m:MAPS_TO]->(k)
ON CREATE SET m.firstseen = timestamp()
SET m.lastupdated = $UPDATE_TAG
"""

_CLEANUP_NODES_QUERY = """
MATCH (:KubernetesCluster{id: $CLUSTER_ID})-[:RESOURCE]->(n)
WHERE n.lastupdated <> $UPDATE_TAG
DETACH DELETE n
"""

_CLEANUP_GRANTS_QUERY = """
MATCH (:KubernetesCluster{id: $CLUSTER_ID})-[:RESOURCE]->(b)-[r:SUBJECT|ROLE_REF]->()
WHERE r.lastupdated <> $UPDATE_TAG
DELETE r
"""

_CLEANUP_MAPPINGS_QUERY = """
MATCH (:KubernetesCluster{id: $CLUSTER_ID})-[:RESOURCE]->(:KubernetesUser|KubernetesGroup)<-[m:MAPS_TO]-()
WHERE m.lastupdated <> $UPDATE_TAG
DELETE m
"""


def flatten_role(role: Union[Role, ClusterRole]) -> Dict[str, Any]:
    """
    Collapses the rules of a role into one list each of api groups, resources and verbs. The core
    api group "" is written as "core".
    """
    return {
        "role_name": role.name,
        "role_type": role.kind,
        "namespace": role.namespace if isinstance(role, Role) else None,
        "api_groups": dedupe(group or "core" for rule in role.rules for group in rule.api_groups),
        "resources": dedupe(resource for rule in role.rules for resource in rule.resources),
        "verbs": dedupe(verb for rule in role.rules for verb in rule.verbs),
    }


def transform_roles(policy: RbacPolicy, cluster_name: str) -> Dict[str, List[Dict[str, Any]]]:
    """
    Flattens role rules into api_groups, resources, and verbs lists, one dict per role.
    """
    roles = []
    for role in policy.roles.values():
        flat = flatten_role(role)
        roles.append(
            {
                "id": f"{cluster_name}/{role.namespace}/{role.name}",
                "name": role.name,
                "namespace": role.namespace,
                "api_groups": flat["api_groups"],
                "resources": flat["resources"],
                "verbs": flat["verbs"],
            }
        )
    cluster_roles = []
    for cluster_role in policy.cluster_roles.values():
        flat = flatten_role(cluster_role)
        cluster_roles.append(
            {
                "id": f"{cluster_name}/{cluster_role.name}",
                "name": cluster_role.name,
                "namespace": None,
                "api_groups": flat["api_groups"],
                "resources": flat["resources"],
                "verbs": flat["verbs"],
            }
        )
    return {"roles": roles, "cluster_roles": cluster_roles}


def _binding_id(cluster_name: str, binding: Any) -> str:
    if isinstance(binding, RoleBinding):
        return f"{cluster_name}/{binding.namespace}/{binding.name}"
    return f"{cluster_name}/{binding.name}"


def _subject_id(cluster_name: str, kind: str, name: str, namespace: str | None) -> str:
    if kind == "ServiceAccount":
        return f"{cluster_name}/{namespace}/{name}"
    return f"{cluster_name}/{name}"


def transform_bindings(policy: RbacPolicy, cluster_name: str) -> Dict[str, List[Dict[str, Any]]]:
    """
    Returns binding rows keyed by binding kind, and one subject row per (binding, subject) pair.
    Subjects of unknown kinds are dropped.
    """
    role_bindings = []
    cluster_role_bindings = []
    subjects = []
    for binding in policy.bindings():
        namespace = binding.namespace if isinstance(binding, RoleBinding) else None
        if binding.role_ref.kind == "Role" and namespace:
            role_id = f"{cluster_name}/{namespace}/{binding.role_ref.name}"
        else:
            role_id = f"{cluster_name}/{binding.role_ref.name}"
        row = {
            "id": _binding_id(cluster_name, binding),
            "name": binding.name,
            "namespace": namespace,
            "role_name": binding.role_ref.name,
            "role_kind": binding.role_ref.kind,
            "role_id": role_id,
        }
        (role_bindings if namespace else cluster_role_bindings).append(row)

        for subject in binding.subjects:
            if subject.kind not in SUBJECT_LABELS:
                logger.debug(f"Skipping subject {subject} of {binding.kind} {binding.name}")
                continue
            subject_namespace = subject.namespace or namespace if subject.kind == "ServiceAccount" else None
            if subject.kind == "ServiceAccount" and not subject_namespace:
                logger.debug(
                    f"Skipping ServiceAccount {subject.name} without a namespace in {binding.kind} {binding.name}"
                )
                continue
            subjects.append(
                {
                    "binding_id": row["id"],
                    "kind": subject.kind,
                    "subject_id": _subject_id(cluster_name, subject.kind, subject.name, subject_namespace),
                    "subject_name": subject.name,
                    "subject_namespace": subject_namespace,
                }
            )
    return {
        "role_bindings": role_bindings,
        "cluster_role_bindings": cluster_role_bindings,
        "subjects": subjects,
    }


def transform_identity_mappings(policy: RbacPolicy, cluster_name: str) -> List[Dict[str, Any]]:
    """
    One row per (IAM principal, Kubernetes user or group) pair. Templated usernames are resolved
    against the users named in bindings, since those are the only ones that can hold permissions.
    Names that still hold a placeholder only known at login (such as {{EC2PrivateDNSName}}) are skipped.
    """
    bound_users = sorted({s.name for b in policy.bindings() for s in b.subjects if s.kind == "User"})

    targets = []
    for mapping in policy.identity_mappings:
        if mapping.is_templated:
            continue
        targets.append((mapping, "User", mapping.username or mapping.arn))
        targets.extend((mapping, "Group", group) for group in mapping.groups)

    templated = [m for m in policy.identity_mappings if m.is_templated]
    for match in find_templated_users(templated, bound_users):
        targets.append((match["mapping"], "User", match["username"]))
        targets.extend((match["mapping"], "Group", group) for group in match["groups"])

    rows = []
    for mapping, target_kind, target_name in targets:
        if "{{" in target_name:
            logger.debug(f"Skipping unresolved {target_kind} {target_name} mapped from {mapping.arn}")
            continue
        rows.append(
            {
                "arn": mapping.arn,
                "aws_kind": mapping.kind,
                "target_kind": target_kind,
                "target_id": f"{cluster_name}/{target_name}",
                "target_name": target_name,
            }
        )
    return rows


@timeit
def load_roles(
    neo4j_session: neo4j.Session,
    roles: Dict[str, List[Dict[str, Any]]],
    update_tag: int,
    cluster_id: str,
) -> None:
    logger.info(
        f"Loading {len(roles['roles'])} KubernetesRoles and {len(roles['cluster_roles'])} KubernetesClusterRoles"
    )
    for label, key in (("KubernetesRole", "roles"), ("KubernetesClusterRole", "cluster_roles")):
        load_graph_data(
            neo4j_session,
            _ROLE_QUERY.format(label=label),
            roles[key],
            UPDATE_TAG=update_tag,
            CLUSTER_ID=cluster_id,
        )


@timeit
def load_bindings(
    neo4j_session: neo4j.Session,
    bindings: Dict[str, List[Dict[str, Any]]],
    update_tag: int,
    cluster_id: str,
) -> None:
    logger.info(
        f"Loading {len(bindings['role_bindings'])} KubernetesRoleBindings and "
        f"{len(bindings['cluster_role_bindings'])} KubernetesClusterRoleBindings"
    )
    for label, key in (
        ("KubernetesRoleBinding", "role_bindings"),
        ("KubernetesClusterRoleBinding", "cluster_role_bindings"),
    ):
        for role_kind, role_label in (("Role", "KubernetesRole"), ("ClusterRole", "KubernetesClusterRole")):
            rows = [row for row in bindings[key] if row["role_kind"] == role_kind]
            load_graph_data(
                neo4j_session,
                _BINDING_QUERY.format(label=label, role_label=role_label),
                rows,
                UPDATE_TAG=update_tag,
                CLUSTER_ID=cluster_id,
            )

    # Subjects last: they attach to the binding nodes loaded above.
    for kind, label in SUBJECT_LABELS.items():
        rows = [row for row in bindings["subjects"] if row["kind"] == kind]
        load_graph_data(
            neo4j_session,
            _SUBJECT_QUERY.format(label=label),
            rows,
            UPDATE_TAG=update_tag,
            CLUSTER_ID=cluster_id,
        )


@timeit
def load_identity_mappings(
    neo4j_session: neo4j.Session,
    mappings: List[Dict[str, Any]],
    update_tag: int,
    cluster_id: str,
) -> None:
    logger.info(f"Loading {len(mappings)} AWS IAM to Kubernetes identity mappings")
    for aws_kind, aws_label in (("role", "AWSRole"), ("user", "AWSUser")):
        for target_kind, k8s_label in (("User", "KubernetesUser"), ("Group", "KubernetesGroup")):
            rows = [m for m in mappings if m["aws_kind"] == aws_kind and m["target_kind"] == target_kind]
            load_graph_data(
                neo4j_session,
                _AWS_MAPPING_QUERY.format(aws_label=aws_label, k8s_label=k8s_label),
                rows,
                UPDATE_TAG=update_tag,
                CLUSTER_ID=cluster_id,
            )


@timeit
def cleanup(neo4j_session: neo4j.Session, common_job_parameters: Dict[str, Any]) -> None:
    logger.debug("Running cleanup job for Kubernetes RBAC resources")
    run_write_query(neo4j_session, _CLEANUP_NODES_QUERY, **common_job_parameters)
    run_write_query(neo4j_session, _CLEANUP_GRANTS_QUERY, **common_job_parameters)
    run_write_query(neo4j_session, _CLEANUP_MAPPINGS_QUERY, **common_job_parameters)


@timeit
def sync_policy(
    neo4j_session: neo4j.Session,
    policy: RbacPolicy,
    update_tag: int,
    cluster_name: str,
) -> None:
    logger.info(f"Syncing RBAC policy for cluster {cluster_name} to Neo4j")
    common_job_parameters = {"UPDATE_TAG": update_tag, "CLUSTER_ID": cluster_name}

    run_write_query(neo4j_session, _CLUSTER_QUERY, **common_job_parameters)
    load_roles(neo4j_session, transform_roles(policy, cluster_name), update_tag, cluster_name)
    # Bindings after roles so that ROLE_REF can match
    load_bindings(neo4j_session, transform_bindings(policy, cluster_name), update_tag, cluster_name)
    load_identity_mappings(
        neo4j_session,
        transform_identity_mappings(policy, cluster_name),
        update_tag,
        cluster_name,
    )
    cleanup(neo4j_session, common_job_parameters)
