import logging
import re
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from typing import TypedDict

import yaml
from arn import Arn

from rbaclab.models.rbac import AwsIdentityMapping
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import UserInfo

logger = logging.getLogger(__name__)

AUTHENTICATED_GROUP = "system:authenticated"

ACCOUNT_ID_TOKEN = "{{AccountID}}"
SESSION_TOKEN = "{{SessionName}}"
SESSION_RAW_TOKEN = "{{SessionNameRaw}}"
PRIVATE_DNS_TOKEN = "{{EC2PrivateDNSName}}"

# Rendered username pieces (post-template):
# - For {{SessionName}}: '@' is transliterated to '-', so no '@' shows up.
SESSION_RENDERED = r"[\w+=,.-]{2,64}"
# - For {{SessionNameRaw}}: raw session name, '@' allowed.
SESSION_RENDERED_RAW = r"[\w+=,.@-]{2,64}"

_TOKEN_RE = re.compile(r"(\{\{SessionNameRaw\}\}|\{\{SessionName\}\})")


class IdentityNotMapped(Exception):
    pass


class ParsedAuthMappings(TypedDict):
    roles: List[AwsIdentityMapping]
    users: List[AwsIdentityMapping]
    accounts: List[str]
    templated_roles: List[AwsIdentityMapping]
    templated_users: List[AwsIdentityMapping]


def split_arn(arn: str) -> Tuple[str, str, str, str, str]:
    """
    Split an ARN into (partition, service, region, account, resource).
    """
    parts = arn.split(":", 5)
    if len(parts) != 6 or parts[0] != "arn":
        raise ValueError(f"Not a valid ARN: {arn}")
    return parts[1], parts[2], parts[3], parts[4], parts[5]


def canonicalize_arn(arn: str) -> str:
    """
    Reduce a caller ARN to the form aws-iam-authenticator compares against the aws-auth ConfigMap:
    STS assumed-role ARNs become the IAM role ARN, and IAM role paths are dropped.
    """
    partition, service, _, account, resource = split_arn(arn)
    if service == "sts" and resource.startswith("assumed-role/"):
        pieces = resource.split("/")
        if len(pieces) < 3:
            raise ValueError(f"Assumed-role ARN is missing a session name: {arn}")
        return f"arn:{partition}:iam::{account}:role/{pieces[1]}"
    if service == "iam" and resource.startswith("role/"):
        role_name = resource.split("/")[-1]
        return f"arn:{partition}:iam::{account}:role/{role_name}"
    return arn


def session_name_from_arn(arn: str) -> Optional[str]:
    """Return the session name of an STS assumed-role ARN, or None for other ARNs."""
    _, service, _, _, resource = split_arn(arn)
    if service == "sts" and resource.startswith("assumed-role/"):
        return resource.split("/", 2)[2]
    return None


def process_templated_account_id(template_string: str, arn: str) -> str:
    """
    Process templated string by replacing {{AccountID}} with actual account ID from ARN.
    """
    if not template_string or not arn:
        return template_string

    if ACCOUNT_ID_TOKEN not in template_string:
        return template_string

    try:
        account_id = Arn(arn).account
    except Exception:
        logger.warning(
            f"Failed to parse account ID from ARN {arn} for templated string {template_string}"
        )
        return template_string
    processed = template_string.replace(ACCOUNT_ID_TOKEN, account_id)
    logger.debug(f"Replaced {{{{AccountID}}}} with {account_id}: {template_string} -> {processed}")
    return processed


def template_to_regex(template_string: str) -> re.Pattern:
    """
    Convert an aws-iam-authenticator username template into a regex that matches
    all concrete usernames. Supports multiple {{SessionName}} and/or
    {{SessionNameRaw}} placeholders.
    """
    if not template_string:
        raise ValueError("template_string cannot be empty or None")

    built = []
    seen = {"sess": False, "sessraw": False}
    for part in _TOKEN_RE.split(template_string):
        if part == SESSION_TOKEN:
            if not seen["sess"]:
                built.append(f"(?P<sess>{SESSION_RENDERED})")
                seen["sess"] = True
            else:
                built.append(r"(?P=sess)")
        elif part == SESSION_RAW_TOKEN:
            if not seen["sessraw"]:
                built.append(f"(?P<sessraw>{SESSION_RENDERED_RAW})")
                seen["sessraw"] = True
            else:
                built.append(r"(?P=sessraw)")
        elif part:
            built.append(re.escape(part))

    regex_str = "^" + "".join(built) + "$"
    logger.debug(f"Generated regex pattern for template '{template_string}': {regex_str}")
    return re.compile(regex_str)


def render_template(
    template_string: str,
    arn: str,
    session_name: Optional[str] = None,
    private_dns_name: Optional[str] = None,
) -> str:
    """
    Render every aws-iam-authenticator placeholder in a username or group template.
    """
    rendered = process_templated_account_id(template_string, arn)
    if SESSION_TOKEN in rendered or SESSION_RAW_TOKEN in rendered:
        if not session_name:
            raise IdentityNotMapped(
                f"Template '{template_string}' needs a session name but {arn} does not carry one"
            )
        rendered = rendered.replace(SESSION_RAW_TOKEN, session_name)
        rendered = rendered.replace(SESSION_TOKEN, session_name.replace("@", "-"))
    if PRIVATE_DNS_TOKEN in rendered:
        if not private_dns_name:
            raise IdentityNotMapped(
                f"Template '{template_string}' needs the EC2 private DNS name of the caller"
            )
        rendered = rendered.replace(PRIVATE_DNS_TOKEN, private_dns_name)
    return rendered


def find_templated_users(
    templated_mappings: List[AwsIdentityMapping], actual_k8s_users: List[str]
) -> List[Dict[str, Any]]:
    """
    Takes templated mappings like (admin:{{SessionNameRaw}}) and finds actual kubernetes users that match.
    Returns one dict per match with the mapping, the concrete username, and the groups rendered
    with the captured session name.
    """
    matched_users = []
    for mapping in templated_mappings:
        if not mapping.is_templated:
            continue
        try:
            compiled_regex = template_to_regex(mapping.username)
        except (ValueError, re.error) as e:
            logger.warning(f"Invalid template '{mapping.username}': {e}")
            continue

        for k8s_user in actual_k8s_users:
            match = compiled_regex.match(k8s_user)
            if not match:
                continue
            captured = match.groupdict()
            groups = []
            for group in mapping.groups:
                if captured.get("sessraw"):
                    group = group.replace(SESSION_RAW_TOKEN, captured["sessraw"])
                if captured.get("sess"):
                    group = group.replace(SESSION_TOKEN, captured["sess"])
                if "{{" in group:
                    logger.debug(f"Cannot resolve group {group} from username {k8s_user}")
                    continue
                groups.append(group)
            matched_users.append(
                {
                    "mapping": mapping,
                    "username": k8s_user,
                    "groups": groups,
                    "captured_values": captured,
                }
            )
            logger.debug(
                f"Matched template '{mapping.username}' to user '{k8s_user}' for ARN {mapping.arn}"
            )
    return matched_users


def _load_mapping_list(data: Dict[str, Any], key: str) -> List[Any]:
    raw = data.get(key) or ""
    try:
        loaded = yaml.safe_load(raw) if isinstance(raw, str) else raw
    except yaml.YAMLError as e:
        raise ValueError(f"aws-auth {key} is not valid YAML: {e}") from e
    if loaded is None:
        return []
    if not isinstance(loaded, list):
        raise ValueError(f"aws-auth {key} must be a YAML list, got {type(loaded).__name__}")
    return loaded


def _to_mapping(entry: Any, arn_key: str, kind: str, source_key: str) -> Optional[AwsIdentityMapping]:
    if not isinstance(entry, dict):
        raise ValueError(f"aws-auth {source_key} entries must be mappings, got {entry!r}")
    arn = entry.get(arn_key)
    if not arn:
        logger.warning(f"Skipping aws-auth {source_key} entry without {arn_key}: {entry}")
        return None

    username = entry.get("username") or ""
    groups = entry.get("groups") or []
    if isinstance(groups, str):
        groups = [groups]

    if "{{" not in username and not any("{{" in g for g in groups):
        return AwsIdentityMapping(arn=arn, kind=kind, username=username, groups=tuple(groups))

    # AccountID can be resolved right away; session placeholders need the caller.
    username = process_templated_account_id(username, arn)
    groups = [process_templated_account_id(g, arn) for g in groups]
    logger.debug(f"Processed templated {source_key} entry for {arn}: {username} {groups}")
    return AwsIdentityMapping(arn=arn, kind=kind, username=username, groups=tuple(groups))


def parse_aws_auth_mappings(data: Dict[str, Any]) -> ParsedAuthMappings:
    """
    Parse mapRoles, mapUsers, and mapAccounts from the data section of the aws-auth ConfigMap,
    separating entries whose username still needs a session name.
    """
    result: ParsedAuthMappings = {
        "roles": [],
        "users": [],
        "accounts": [],
        "templated_roles": [],
        "templated_users": [],
    }

    for entry in _load_mapping_list(data, "mapRoles"):
        mapping = _to_mapping(entry, "rolearn", "role", "mapRoles")
        if mapping is None:
            continue
        if mapping.is_templated:
            result["templated_roles"].append(mapping)
        else:
            result["roles"].append(mapping)

    for entry in _load_mapping_list(data, "mapUsers"):
        mapping = _to_mapping(entry, "userarn", "user", "mapUsers")
        if mapping is None:
            continue
        if mapping.is_templated:
            result["templated_users"].append(mapping)
        else:
            result["users"].append(mapping)

    result["accounts"] = [str(a) for a in _load_mapping_list(data, "mapAccounts")]

    logger.info(
        f"Parsed {len(result['roles']) + len(result['templated_roles'])} role mappings, "
        f"{len(result['users']) + len(result['templated_users'])} user mappings, "
        f"and {len(result['accounts'])} account mappings from aws-auth ConfigMap"
    )
    return result


def parse_eksctl_identity_mappings(cluster_config: Dict[str, Any]) -> List[AwsIdentityMapping]:
    """
    Turn eksctl ClusterConfig `iamIdentityMappings` into aws-auth style mappings.
    Service-linked mappings (`serviceName`) are ignored since they do not name an IAM principal.
    """
    mappings = []
    for entry in cluster_config.get("iamIdentityMappings") or []:
        if not isinstance(entry, dict):
            raise ValueError(f"iamIdentityMappings entries must be mappings, got {entry!r}")
        arn = entry.get("arn")
        if not arn:
            logger.debug(f"Skipping eksctl identity mapping without arn: {entry}")
            continue
        _, _, _, _, resource = split_arn(arn)
        kind = "user" if resource.startswith("user/") else "role"
        mapping = _to_mapping(entry, "arn", kind, "iamIdentityMappings")
        if mapping is not None:
            mappings.append(mapping)
    return mappings


def add_aws_auth_to_policy(policy: RbacPolicy, parsed: ParsedAuthMappings) -> None:
    for key in ("roles", "templated_roles", "users", "templated_users"):
        for mapping in parsed[key]:  # type: ignore[literal-required]
            policy.add(mapping)
    policy.add_mapped_accounts(parsed["accounts"])


class IamIdentityMapper:
    """
    Authenticates IAM caller ARNs to Kubernetes identities the way aws-iam-authenticator does
    with the aws-auth ConfigMap.
    """

    def __init__(self, mappings: List[AwsIdentityMapping], accounts: Optional[List[str]] = None) -> None:
        self.user_mappings = {m.arn: m for m in mappings if m.kind == "user"}
        self.role_mappings: Dict[str, AwsIdentityMapping] = {}
        for m in mappings:
            if m.kind != "role":
                continue
            try:
                self.role_mappings[canonicalize_arn(m.arn)] = m
            except ValueError:
                logger.warning(f"Ignoring role mapping with invalid ARN {m.arn}")
        self.accounts = [str(a) for a in (accounts or [])]

    @classmethod
    def from_policy(cls, policy: RbacPolicy) -> "IamIdentityMapper":
        return cls(policy.identity_mappings, policy.mapped_accounts)

    def resolve(self, arn: str, private_dns_name: Optional[str] = None) -> UserInfo:
        canonical = canonicalize_arn(arn)
        session_name = session_name_from_arn(arn)

        mapping = self.user_mappings.get(arn) or self.user_mappings.get(canonical)
        if mapping is None:
            mapping = self.role_mappings.get(canonical)

        if mapping is not None:
            username = render_template(mapping.username or canonical, arn, session_name, private_dns_name)
            groups = [
                render_template(group, arn, session_name, private_dns_name) for group in mapping.groups
            ]
            logger.debug(f"Mapped {arn} to user {username} with groups {groups}")
            return UserInfo(name=username, groups=tuple(groups) + (AUTHENTICATED_GROUP,))

        _, _, _, account, _ = split_arn(canonical)
        if account in self.accounts:
            logger.debug(f"Mapped {arn} through mapAccounts entry {account}")
            return UserInfo(name=canonical, groups=(AUTHENTICATED_GROUP,))

        raise IdentityNotMapped(f"{arn} is not mapped in aws-auth (canonical ARN {canonical})")
