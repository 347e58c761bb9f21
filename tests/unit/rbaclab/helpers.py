from rbaclab.intel.manifests import add_document_to_policy
from rbaclab.intel.manifests import parse_manifest_text
from rbaclab.models.rbac import RbacPolicy


def policy_from_text(*texts: str) -> RbacPolicy:
    """Build a resolved RbacPolicy from in-memory manifest strings."""
    policy = RbacPolicy()
    for index, text in enumerate(texts):
        for document in parse_manifest_text(text, source=f"fixture-{index}.yaml"):
            add_document_to_policy(policy, document)
    policy.resolve_aggregation()
    return policy
