"""
rbaclab CLI

Load Kubernetes RBAC policy from manifests or a live cluster, ask authorization questions
about it, lint it, and export it to Neo4j.
"""

import logging
import os
import time
from enum import Enum
from typing import Generator
from typing import NoReturn

import neo4j
import typer
from neo4j import GraphDatabase
from typing_extensions import Annotated

from rbaclab.authorizer import Authorizer
from rbaclab.authorizer import make_user
from rbaclab.graph.rbac import sync_policy
from rbaclab.intel.cluster import KubernetesContextNotFound
from rbaclab.intel.cluster import build_policy_from_cluster
from rbaclab.intel.cluster import get_k8s_clients
from rbaclab.intel.eks import IamIdentityMapper
from rbaclab.intel.eks import IdentityNotMapped
from rbaclab.intel.manifests import ManifestError
from rbaclab.intel.manifests import load_policy
from rbaclab.models.rbac import NonResourceAttributes
from rbaclab.models.rbac import RbacPolicy
from rbaclab.models.rbac import RequestAttributes
from rbaclab.models.rbac import ResourceAttributes
from rbaclab.models.rbac import UserInfo
from rbaclab.rules.data.rules import RULES
from rbaclab.rules.runners import run_rules
from rbaclab.settings import DEFAULT_NEO4J_URI
from rbaclab.settings import check_module_settings
from rbaclab.settings import get_privileged_groups
from rbaclab.settings import get_setting
from rbaclab.version import get_version_string

logger = logging.getLogger(__name__)

EXIT_DOMAIN_ERROR = 2
DEFAULT_KUBECONFIG = os.path.join("~", ".kube", "config")
DOMAIN_ERRORS = (ManifestError, KubernetesContextNotFound, IdentityNotMapped)

app = typer.Typer(
    help="Inspect, query and lint Kubernetes RBAC policy",
    no_args_is_help=True,
)


class OutputFormat(str, Enum):
    """Output format options."""

    text = "text"
    json = "json"


# ----------------------------
# Shared options
# ----------------------------

FilesOption = Annotated[
    list[str] | None,
    typer.Option(
        "--filename",
        "-f",
        help="Manifest file or directory. May be repeated.",
    ),
]
RecursiveOption = Annotated[
    bool,
    typer.Option("--recursive", "-R", help="Walk directories given with -f recursively."),
]
KubeconfigOption = Annotated[
    str | None,
    typer.Option(help="Path to a kubeconfig. Defaults to the k8s.kubeconfig setting, then ~/.kube/config."),
]
ContextOption = Annotated[
    str | None,
    typer.Option(help="kubeconfig context of a live cluster to read instead of manifests."),
]
NamespaceOption = Annotated[
    str,
    typer.Option("--namespace", "-n", help="Namespace of the request. Empty means cluster scope."),
]


def complete_rules_with_all(incomplete: str) -> Generator[str, None, None]:
    """Autocomplete rule ids plus 'all'."""
    for name in list(RULES.keys()) + ["all"]:
        if name.startswith(incomplete):
            yield name


def _fail(error: Exception) -> NoReturn:
    typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(EXIT_DOMAIN_ERROR)


def _resolve_kubeconfig(kubeconfig: str | None) -> str:
    path = kubeconfig or get_setting("k8s", "kubeconfig") or DEFAULT_KUBECONFIG
    return os.path.expanduser(path)


def _load(
    files: list[str] | None,
    recursive: bool,
    kubeconfig: str | None,
    context: str | None,
) -> tuple[RbacPolicy, str]:
    """
    Returns the policy and a name for where it came from: the kubeconfig context for a live cluster,
    "manifests" otherwise. Given both, the manifests are layered over the cluster's policy, so
    questions can be asked about the cluster as it would be after applying them.
    """
    use_cluster = bool(kubeconfig or context)
    if files and not use_cluster:
        return load_policy(files, recursive=recursive), "manifests"

    if not use_cluster:
        typer.secho(
            "Error: provide manifests with -f or a cluster with --kubeconfig/--context",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(EXIT_DOMAIN_ERROR)

    clients = get_k8s_clients(_resolve_kubeconfig(kubeconfig), context)
    if len(clients) > 1:
        logger.warning(
            f"kubeconfig has {len(clients)} contexts and no --context was given; reading {clients[0].name}"
        )
    client = clients[0]
    policy = build_policy_from_cluster(client)
    if files:
        policy.merge(load_policy(files, recursive=recursive))
        policy.resolve_aggregation()
    return policy, client.name


def _split_resource(resource: str, subresource: str) -> tuple[str, str]:
    """`pods/log` is shorthand for resource pods, subresource log."""
    if "/" in resource and not subresource:
        resource, subresource = resource.split("/", 1)
    return resource, subresource


def _build_user(
    policy: RbacPolicy,
    as_user: str | None,
    as_groups: list[str] | None,
    as_iam: str | None,
) -> UserInfo:
    if as_iam and as_user:
        raise typer.BadParameter("--as and --as-iam cannot be used together", param_hint="--as")
    if as_iam:
        try:
            user = IamIdentityMapper.from_policy(policy).resolve(as_iam)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--as-iam")
        if as_groups:
            user = UserInfo(name=user.name, groups=user.groups + tuple(as_groups))
        return user
    if not as_user:
        raise typer.BadParameter("one of --as or --as-iam is required", param_hint="--as")
    return make_user(as_user, as_groups or ())


def _request(
    verb: str,
    resource: str,
    namespace: str,
    name: str,
    subresource: str,
    api_group: str,
    non_resource_url: bool,
) -> RequestAttributes:
    if non_resource_url:
        return NonResourceAttributes(verb=verb, path=resource)
    resource, subresource = _split_resource(resource, subresource)
    return ResourceAttributes(
        verb=verb,
        resource=resource,
        namespace=namespace,
        api_group=api_group,
        subresource=subresource,
        name=name,
    )


# ----------------------------
# CLI Commands
# ----------------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(get_version_string())
        raise typer.Exit()


@app.callback()
def callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose logging.")] = False,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Restrict logging to warnings and errors only.")] = False,
    version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show the version and exit."),
    ] = False,
) -> None:
    if verbose:
        logging.getLogger("rbaclab").setLevel(logging.DEBUG)
    elif quiet:
        logging.getLogger("rbaclab").setLevel(logging.WARNING)
    else:
        logging.getLogger("rbaclab").setLevel(logging.INFO)


@app.command(name="can-i")  # type: ignore[misc]
def can_i_cmd(
    verb: Annotated[str, typer.Argument(help="Verb, e.g. get, list, create")],
    resource: Annotated[str, typer.Argument(help="Resource such as pods or pods/log, or a URL path")],
    files: FilesOption = None,
    recursive: RecursiveOption = False,
    kubeconfig: KubeconfigOption = None,
    context: ContextOption = None,
    as_user: Annotated[str | None, typer.Option("--as", help="Username to check.")] = None,
    as_groups: Annotated[
        list[str] | None,
        typer.Option("--as-group", help="Group of the user. May be repeated."),
    ] = None,
    as_iam: Annotated[
        str | None,
        typer.Option("--as-iam", help="IAM user or role ARN, mapped through aws-auth."),
    ] = None,
    namespace: NamespaceOption = "",
    name: Annotated[str, typer.Option(help="Name of the object.")] = "",
    subresource: Annotated[str, typer.Option(help="Subresource, e.g. log or status.")] = "",
    api_group: Annotated[str, typer.Option(help="API group. Empty is the core group.")] = "",
    non_resource_url: Annotated[
        bool,
        typer.Option("--non-resource-url", help="Treat RESOURCE as a non-resource URL such as /healthz."),
    ] = False,
) -> None:
    """
    Check whether a user may perform an action. Prints yes or no, and exits 0 or 1.

    \b
    Examples:
        rbaclab can-i get pods -n project --as alice -f manifests/
        rbaclab can-i get pods/log -n project --as system:serviceaccount:project:ci -f manifests/
        rbaclab can-i list secrets --as-iam arn:aws:iam::111122223333:role/Admin -f aws-auth.yaml
        rbaclab can-i get /healthz --non-resource-url --as alice -f manifests/
    """
    try:
        policy, _ = _load(files, recursive, kubeconfig, context)
        user = _build_user(policy, as_user, as_groups, as_iam)
    except DOMAIN_ERRORS as e:
        _fail(e)

    attrs = _request(verb, resource, namespace, name, subresource, api_group, non_resource_url)
    decision = Authorizer(policy, get_privileged_groups()).authorize(user, attrs)
    if decision.allowed:
        typer.secho("yes", fg=typer.colors.GREEN)
    else:
        typer.secho("no", fg=typer.colors.RED)
    typer.echo(decision.reason)
    raise typer.Exit(0 if decision.allowed else 1)


@app.command(name="list-rules")  # type: ignore[misc]
def list_rules_cmd(
    files: FilesOption = None,
    recursive: RecursiveOption = False,
    kubeconfig: KubeconfigOption = None,
    context: ContextOption = None,
    as_user: Annotated[str | None, typer.Option("--as", help="Username to check.")] = None,
    as_groups: Annotated[
        list[str] | None,
        typer.Option("--as-group", help="Group of the user. May be repeated."),
    ] = None,
    as_iam: Annotated[
        str | None,
        typer.Option("--as-iam", help="IAM user or role ARN, mapped through aws-auth."),
    ] = None,
    namespace: NamespaceOption = "",
) -> None:
    """
    List every rule that applies to a user, like kubectl auth can-i --list.

    \b
    Examples:
        rbaclab list-rules --as alice -n project -f manifests/
    """
    try:
        policy, _ = _load(files, recursive, kubeconfig, context)
        user = _build_user(policy, as_user, as_groups, as_iam)
    except DOMAIN_ERRORS as e:
        _fail(e)

    authorizer = Authorizer(policy, get_privileged_groups())
    privileged = [g for g in user.groups if g in authorizer.privileged_groups]
    if privileged:
        typer.secho(f'{user.name} is a member of privileged group "{privileged[0]}": everything is allowed', bold=True)
        return

    grants = authorizer.rules_for(user, namespace)
    typer.secho(f"\nRules for {user.name} ({', '.join(user.groups)})\n", bold=True)
    if not grants:
        typer.echo("No rules apply.")
        return
    for grant in grants:
        scope = f"namespace {grant.namespace}" if grant.namespace else "cluster"
        typer.secho(f"{grant.rule}", fg=typer.colors.CYAN)
        typer.echo(f"  via {grant.binding.kind} {grant.binding.name} -> {grant.role.kind} {grant.role.name} ({scope})")


@app.command(name="who-can")  # type: ignore[misc]
def who_can_cmd(
    verb: Annotated[str, typer.Argument(help="Verb, e.g. get, list, create")],
    resource: Annotated[str, typer.Argument(help="Resource such as pods or pods/log, or a URL path")],
    files: FilesOption = None,
    recursive: RecursiveOption = False,
    kubeconfig: KubeconfigOption = None,
    context: ContextOption = None,
    namespace: NamespaceOption = "",
    name: Annotated[str, typer.Option(help="Name of the object.")] = "",
    subresource: Annotated[str, typer.Option(help="Subresource, e.g. log or status.")] = "",
    api_group: Annotated[str, typer.Option(help="API group. Empty is the core group.")] = "",
    non_resource_url: Annotated[
        bool,
        typer.Option("--non-resource-url", help="Treat RESOURCE as a non-resource URL such as /healthz."),
    ] = False,
) -> None:
    """
    List the subjects allowed to perform an action.

    \b
    Examples:
        rbaclab who-can list secrets -f manifests/
        rbaclab who-can get pods -n project -f manifests/
    """
    try:
        policy, _ = _load(files, recursive, kubeconfig, context)
    except DOMAIN_ERRORS as e:
        _fail(e)

    attrs = _request(verb, resource, namespace, name, subresource, api_group, non_resource_url)
    typer.secho(f"\nSubjects that can {attrs}\n", bold=True)
    for grant in Authorizer(policy, get_privileged_groups()).who_can(attrs):
        typer.secho(f"{grant.subject}", fg=typer.colors.CYAN)
        if grant.binding is None:
            typer.echo("  privileged group")
        else:
            typer.echo(f"  via {grant.binding.kind} {grant.binding.name} -> {grant.role.kind} {grant.role.name}")


@app.command(name="rules")  # type: ignore[misc]
def rules_cmd() -> None:
    """
    List available checks and their facts.
    """
    typer.secho("\nAvailable Rules\n", bold=True)
    for rule_id, rule in RULES.items():
        typer.secho(f"{rule_id}", fg=typer.colors.CYAN)
        typer.echo(f"  Name:         {rule.name}")
        typer.echo(f"  Version:      {rule.version}")
        typer.echo(f"  Facts:        {', '.join(f.id for f in rule.facts)}")
        for framework in rule.frameworks:
            typer.echo(f"  Framework:    {framework.short_name} {framework.requirement}")
        if rule.references:
            typer.echo("  References:")
            for ref in rule.references:
                typer.echo(f"    - {ref.url}")
        typer.echo()


@app.command(name="lint")  # type: ignore[misc]
def lint_cmd(
    rule: Annotated[
        str,
        typer.Argument(
            help="Rule id to run, or all",
            autocompletion=complete_rules_with_all,
        ),
    ] = "all",
    fact: Annotated[
        str | None,
        typer.Option(help="Only run this fact of the rule."),
    ] = None,
    files: FilesOption = None,
    recursive: RecursiveOption = False,
    kubeconfig: KubeconfigOption = None,
    context: ContextOption = None,
    output: Annotated[
        OutputFormat,
        typer.Option(help="Output format"),
    ] = OutputFormat.text,
    experimental: bool = typer.Option(
        True,
        "--experimental/--no-experimental",
        help="Enable or disable experimental facts.",
    ),
) -> None:
    """
    Run checks against the policy. Exits 0 when nothing was found, 1 otherwise.

    \b
    Examples:
        rbaclab lint -f manifests/
        rbaclab lint rbac_dangling_role_ref -f manifests/
        rbaclab lint all --output json --context prod
    """
    valid_rules = list(RULES.keys()) + ["all"]
    if rule not in valid_rules:
        typer.secho(f"Error: Unknown rule '{rule}'", fg=typer.colors.RED, err=True)
        typer.echo(f"Available: {', '.join(valid_rules)}", err=True)
        raise typer.Exit(EXIT_DOMAIN_ERROR)

    if rule == "all" and fact:
        typer.secho(
            "Error: Cannot filter by fact when running all rules",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(EXIT_DOMAIN_ERROR)

    if fact and RULES[rule].get_fact_by_id(fact) is None:
        typer.secho(
            f"Error: Fact '{fact}' not found in rule '{rule}'",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(EXIT_DOMAIN_ERROR)

    try:
        policy, _ = _load(files, recursive, kubeconfig, context)
    except DOMAIN_ERRORS as e:
        _fail(e)

    rules_to_run = list(RULES.keys()) if rule == "all" else [rule]
    exit_code = run_rules(
        rules_to_run,
        policy,
        output.value,
        fact_filter=fact,
        exclude_experimental=not experimental,
    )
    raise typer.Exit(exit_code)


@app.command(name="sync")  # type: ignore[misc]
def sync_cmd(
    files: FilesOption = None,
    recursive: RecursiveOption = False,
    kubeconfig: KubeconfigOption = None,
    context: ContextOption = None,
    cluster_name: Annotated[
        str | None,
        typer.Option(help="Cluster name for the graph. Defaults to the kubeconfig context, or 'manifests'."),
    ] = None,
    uri: Annotated[str | None, typer.Option(help="Neo4j URI. Defaults to the neo4j.uri setting.")] = None,
    user: Annotated[str | None, typer.Option(help="Neo4j username. Defaults to the neo4j.user setting.")] = None,
    database: Annotated[
        str | None,
        typer.Option(help="Neo4j database name. Defaults to the neo4j.database setting."),
    ] = None,
    neo4j_password_prompt: Annotated[
        bool,
        typer.Option(help="Prompt for Neo4j password interactively"),
    ] = False,
) -> None:
    """
    Write the policy to Neo4j.

    \b
    Examples:
        rbaclab sync -f manifests/ --cluster-name lab
        rbaclab sync --context prod --user neo4j --neo4j-password-prompt
    """
    try:
        policy, source = _load(files, recursive, kubeconfig, context)
    except DOMAIN_ERRORS as e:
        _fail(e)

    uri = uri or get_setting("neo4j", "uri", DEFAULT_NEO4J_URI)
    user = user or get_setting("neo4j", "user")
    database = database or get_setting("neo4j", "database")
    neo4j_auth = None
    if user:
        if neo4j_password_prompt:
            password = typer.prompt("Neo4j password", hide_input=True)
        elif check_module_settings("neo4j", ["password"]):
            password = get_setting("neo4j", "password")
        else:
            typer.secho(
                "Error: a Neo4j user is set but no password. "
                "Use --neo4j-password-prompt or set RBACLAB_NEO4J__PASSWORD.",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(EXIT_DOMAIN_ERROR)
        neo4j_auth = (user, password)

    update_tag = int(time.time())
    try:
        with GraphDatabase.driver(uri, auth=neo4j_auth) as driver:
            with driver.session(database=database) as session:
                sync_policy(session, policy, update_tag, cluster_name or source)
    except neo4j.exceptions.ServiceUnavailable as e:
        logger.debug("Error occurred during Neo4j connect.", exc_info=True)
        typer.secho(
            f"Error: unable to connect to Neo4j at {uri}: {e}. Make sure the Neo4j server is running.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(EXIT_DOMAIN_ERROR)
    except neo4j.exceptions.AuthError as e:
        logger.debug("Error occurred during Neo4j auth.", exc_info=True)
        typer.secho(f"Error: unable to auth to Neo4j: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_DOMAIN_ERROR)

    typer.echo(f"Synced {policy.summary()} to {uri} with update tag {update_tag}")


def main():
    """Entrypoint for the rbaclab CLI."""
    logging.basicConfig(level=logging.INFO)
    logging.getLogger("neo4j").setLevel(logging.ERROR)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    app()


if __name__ == "__main__":
    main()
