import pytest

from rbaclab.intel.eks import canonicalize_arn
from rbaclab.intel.eks import find_templated_users
from rbaclab.intel.eks import IamIdentityMapper
from rbaclab.intel.eks import IdentityNotMapped
from rbaclab.intel.eks import parse_aws_auth_mappings
from rbaclab.intel.eks import process_templated_account_id
from rbaclab.intel.eks import render_template
from rbaclab.intel.eks import session_name_from_arn
from rbaclab.intel.eks import template_to_regex
from rbaclab.models.rbac import AwsIdentityMapping
from tests.data.rbaclab.aws_auth import AWS_AUTH_CONFIGMAP_DATA
from tests.data.rbaclab.aws_auth import TEST_ACCOUNT_ID


@pytest.mark.parametrize(
    "arn,expected",
    [
        (
            "arn:aws:sts::123456789012:assumed-role/EKSAdminRole/jane@example.com",
            "arn:aws:iam::123456789012:role/EKSAdminRole",
        ),
        (
            "arn:aws:iam::123456789012:role/teams/EKSDevRole",
            "arn:aws:iam::123456789012:role/EKSDevRole",
        ),
        ("arn:aws:iam::123456789012:user/alice", "arn:aws:iam::123456789012:user/alice"),
        (
            "arn:aws-cn:sts::123456789012:assumed-role/Node/i-0abc",
            "arn:aws-cn:iam::123456789012:role/Node",
        ),
    ],
)
def test_canonicalize_arn(arn, expected):
    assert canonicalize_arn(arn) == expected


def test_canonicalize_arn_rejects_garbage():
    with pytest.raises(ValueError):
        canonicalize_arn("not-an-arn")
    with pytest.raises(ValueError):
        canonicalize_arn("arn:aws:sts::123456789012:assumed-role/NoSession")


def test_session_name_from_arn():
    assert session_name_from_arn("arn:aws:sts::123456789012:assumed-role/R/jane@example.com") == (
        "jane@example.com"
    )
    assert session_name_from_arn("arn:aws:iam::123456789012:role/R") is None


def test_process_templated_account_id():
    arn = "arn:aws:iam::123456789012:role/EKSTemplatedRole"
    assert process_templated_account_id("user-{{AccountID}}", arn) == "user-123456789012"
    assert process_templated_account_id("plain", arn) == "plain"
    assert process_templated_account_id("", arn) == ""


def test_template_to_regex():
    pattern = template_to_regex("admin:{{SessionName}}")
    assert pattern.match("admin:jane-example.com")
    # {{SessionName}} renders '@' as '-'
    assert not pattern.match("admin:jane@example.com")

    raw = template_to_regex("{{SessionNameRaw}}")
    assert raw.match("jane@example.com").group("sessraw") == "jane@example.com"

    with pytest.raises(ValueError):
        template_to_regex("")


def test_render_template():
    arn = "arn:aws:sts::123456789012:assumed-role/EKSSSORole/jane@example.com"
    assert render_template("sso:{{SessionName}}", arn, "jane@example.com") == "sso:jane-example.com"
    assert render_template("sso:{{SessionNameRaw}}", arn, "jane@example.com") == "sso:jane@example.com"
    assert render_template("node:{{EC2PrivateDNSName}}", arn, private_dns_name="ip-10-0-0-1") == (
        "node:ip-10-0-0-1"
    )
    with pytest.raises(IdentityNotMapped):
        render_template("sso:{{SessionName}}", arn)
    with pytest.raises(IdentityNotMapped):
        render_template("system:node:{{EC2PrivateDNSName}}", arn)


def test_parse_aws_auth_mappings():
    parsed = parse_aws_auth_mappings(AWS_AUTH_CONFIGMAP_DATA)

    # The entry without a rolearn is skipped
    assert len(parsed["roles"]) == 4
    assert [m.username for m in parsed["templated_roles"]] == ["sso:{{SessionName}}"]
    assert [m.username for m in parsed["users"]] == ["alice", "Bob"]
    assert parsed["templated_users"] == []
    assert parsed["accounts"] == ["210987654321"]

    templated = next(m for m in parsed["roles"] if m.arn.endswith("EKSTemplatedRole"))
    assert templated.username == "templated-123456789012"
    assert templated.groups == ("templated-group-123456789012",)


@pytest.mark.parametrize(
    "data",
    [
        {"mapRoles": "- rolearn: [unclosed"},
        {"mapUsers": "userarn: not-a-list"},
        {"mapRoles": "- just-a-string"},
    ],
)
def test_parse_aws_auth_mappings_rejects_malformed_data(data):
    with pytest.raises(ValueError):
        parse_aws_auth_mappings(data)


def test_find_templated_users():
    mapping = AwsIdentityMapping(
        arn="arn:aws:iam::123456789012:role/EKSSSORole",
        kind="role",
        username="sso:{{SessionName}}",
        groups=("sso-group:{{SessionName}}",),
    )

    matches = find_templated_users([mapping], ["sso:jane-example.com", "alice", "sso:x"])

    assert len(matches) == 1
    assert matches[0]["username"] == "sso:jane-example.com"
    assert matches[0]["groups"] == ["sso-group:jane-example.com"]
    assert matches[0]["mapping"] is mapping


class TestIamIdentityMapper:
    def setup_method(self):
        parsed = parse_aws_auth_mappings(AWS_AUTH_CONFIGMAP_DATA)
        mappings = parsed["roles"] + parsed["templated_roles"] + parsed["users"]
        self.mapper = IamIdentityMapper(mappings, parsed["accounts"])

    def test_resolves_user(self):
        user = self.mapper.resolve("arn:aws:iam::123456789012:user/alice")
        assert user.name == "alice"
        assert user.groups == ("developers", "system:authenticated")

    def test_resolves_assumed_role_through_path(self):
        user = self.mapper.resolve("arn:aws:sts::123456789012:assumed-role/EKSDevRole/ci-session")
        assert user.name == "dev-user"

    def test_resolves_session_templates(self):
        user = self.mapper.resolve("arn:aws:sts::123456789012:assumed-role/EKSSSORole/jane@example.com")
        assert user.name == "sso:jane-example.com"
        assert user.groups == ("sso-users", "sso-group:jane@example.com", "system:authenticated")

    def test_node_role_needs_private_dns_name(self):
        arn = "arn:aws:sts::123456789012:assumed-role/EKSNodeRole/i-0abc"
        with pytest.raises(IdentityNotMapped):
            self.mapper.resolve(arn)
        user = self.mapper.resolve(arn, private_dns_name="ip-10-0-0-1.ec2.internal")
        assert user.name == "system:node:ip-10-0-0-1.ec2.internal"

    def test_mapped_account_uses_canonical_arn(self):
        user = self.mapper.resolve("arn:aws:sts::210987654321:assumed-role/Anything/s")
        assert user.name == "arn:aws:iam::210987654321:role/Anything"
        assert user.groups == ("system:authenticated",)

    def test_unmapped_identity_raises(self):
        with pytest.raises(IdentityNotMapped):
            self.mapper.resolve("arn:aws:iam::999999999999:user/mallory")
