from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_1_cluster_admin_usage,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import cis_k8s_5_1_2_secret_access
from rbaclab.rules.data.rules.cis_kubernetes_rbac import cis_k8s_5_1_3_wildcard_roles
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_4_pod_create_access,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_5_default_sa_bindings,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_7_system_masters_group,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_8_escalation_permissions,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_9_pv_create_access,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_10_node_proxy_access,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_11_csr_approval_access,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_12_webhook_config_access,
)
from rbaclab.rules.data.rules.cis_kubernetes_rbac import (
    cis_k8s_5_1_13_sa_token_creation,
)
from rbaclab.rules.data.rules.rbac_consistency import aws_auth_unbound_groups
from rbaclab.rules.data.rules.rbac_consistency import rbac_dangling_role_ref
from rbaclab.rules.data.rules.rbac_consistency import rbac_invalid_subject
from rbaclab.rules.data.rules.rbac_consistency import rbac_role_ref_kind
from rbaclab.rules.data.rules.rbac_consistency import rbac_unused_role

# Rule registry - all available rules, consistency checks first
RULES = {
    rbac_dangling_role_ref.id: rbac_dangling_role_ref,
    rbac_role_ref_kind.id: rbac_role_ref_kind,
    rbac_invalid_subject.id: rbac_invalid_subject,
    rbac_unused_role.id: rbac_unused_role,
    aws_auth_unbound_groups.id: aws_auth_unbound_groups,
    cis_k8s_5_1_1_cluster_admin_usage.id: cis_k8s_5_1_1_cluster_admin_usage,
    cis_k8s_5_1_2_secret_access.id: cis_k8s_5_1_2_secret_access,
    cis_k8s_5_1_3_wildcard_roles.id: cis_k8s_5_1_3_wildcard_roles,
    cis_k8s_5_1_4_pod_create_access.id: cis_k8s_5_1_4_pod_create_access,
    cis_k8s_5_1_5_default_sa_bindings.id: cis_k8s_5_1_5_default_sa_bindings,
    cis_k8s_5_1_7_system_masters_group.id: cis_k8s_5_1_7_system_masters_group,
    cis_k8s_5_1_8_escalation_permissions.id: cis_k8s_5_1_8_escalation_permissions,
    cis_k8s_5_1_9_pv_create_access.id: cis_k8s_5_1_9_pv_create_access,
    cis_k8s_5_1_10_node_proxy_access.id: cis_k8s_5_1_10_node_proxy_access,
    cis_k8s_5_1_11_csr_approval_access.id: cis_k8s_5_1_11_csr_approval_access,
    cis_k8s_5_1_12_webhook_config_access.id: cis_k8s_5_1_12_webhook_config_access,
    cis_k8s_5_1_13_sa_token_creation.id: cis_k8s_5_1_13_sa_token_creation,
}
