#!/usr/bin/env python3
"""
CLI tool for the groupwise operator.
Provides a kubectl-like interface for resources and resource groups.
"""

import json
import os

import click
import requests
import yaml
from jsonschema import Draft7Validator
from tabulate import tabulate

API_BASE_URL = os.getenv("GROUPCTL_API_URL", "http://localhost:8000/api/v1")

DNS_LABEL = "^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"

MANIFEST_SCHEMA = {
    "type": "object",
    "required": ["kind", "metadata"],
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"enum": ["Resource", "ResourceGroup"]},
        "metadata": {
            "type": "object",
            "required": ["name"],
            "properties": {
                "name": {"type": "string", "pattern": DNS_LABEL},
                "namespace": {"type": "string", "pattern": DNS_LABEL},
            },
        },
        "spec": {"type": "object"},
        "group": {
            "type": "object",
            "required": ["name"],
            "properties": {
                "name": {"type": "string", "pattern": DNS_LABEL},
                "namespace": {"type": "string", "pattern": DNS_LABEL},
            },
            "additionalProperties": False,
        },
        "phase": {"enum": ["pending", "active"]},
    },
}

KIND_PATHS = {"Resource": "/resources", "ResourceGroup": "/groups"}

KIND_ALIASES = {
    "resource": "Resource",
    "resources": "Resource",
    "res": "Resource",
    "group": "ResourceGroup",
    "groups": "ResourceGroup",
    "resourcegroup": "ResourceGroup",
    "resourcegroups": "ResourceGroup",
    "rg": "ResourceGroup",
}


def validate_manifest(manifest) -> list:
    """Return a list of human-readable schema errors for a manifest."""
    validator = Draft7Validator(MANIFEST_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(manifest), key=lambda e: list(e.path)):
        path = ".".join(str(p) for p in error.path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    if isinstance(manifest, dict) and manifest.get("kind") == "ResourceGroup":
        if "group" in manifest:
            errors.append("group: only valid for kind Resource")
    return errors


def load_manifests(filename: str) -> list:
    """Load one or more manifests from a YAML or JSON file."""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return [doc for doc in yaml.safe_load_all(f) if doc is not None]
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def manifest_to_payload(manifest: dict) -> dict:
    """Convert a manifest to the API request body for creation."""
    metadata = manifest["metadata"]
    payload = {
        "namespace": metadata.get("namespace", "default"),
        "name": metadata["name"],
        "spec": manifest.get("spec", {}),
    }
    if manifest["kind"] == "Resource" and manifest.get("group"):
        payload["group"] = manifest["group"]
    if manifest["kind"] == "ResourceGroup" and manifest.get("phase"):
        payload["phase"] = manifest["phase"]
    return payload


def resolve_kind(kind: str) -> str:
    resolved = KIND_ALIASES.get(kind.lower())
    if resolved is None:
        raise click.BadParameter(
            f"unknown kind '{kind}' (expected resource or group)", param_hint="KIND"
        )
    return resolved


class GroupwiseCLI:
    """CLI client for the groupwise operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API; returns the JSON body or None on error"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def exists(self, endpoint: str) -> bool:
        try:
            response = requests.get(f"{self.base_url}{endpoint}")
        except requests.exceptions.RequestException:
            return False
        return response.status_code == 200


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Operator API base URL")
@click.pass_context
def cli(ctx, api_url):
    """groupwise CLI - kubectl-like interface for resources and resource groups"""
    ctx.obj = GroupwiseCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True), help="Manifest"
)
@click.pass_obj
def apply(client, filename):
    """Create or update resources and groups from a YAML/JSON file"""
    manifests = load_manifests(filename)

    # Validate everything before sending anything
    failed = False
    for i, manifest in enumerate(manifests):
        for error in validate_manifest(manifest):
            click.echo(f"Manifest {i + 1}: {error}", err=True)
            failed = True
    if failed:
        raise SystemExit(1)

    # Groups first so resources can reference them
    manifests.sort(key=lambda m: 0 if m["kind"] == "ResourceGroup" else 1)

    for manifest in manifests:
        kind = manifest["kind"]
        payload = manifest_to_payload(manifest)
        base_path = KIND_PATHS[kind]
        item_path = f"{base_path}/{payload['namespace']}/{payload['name']}"

        if client.exists(item_path):
            update = {
                k: v for k, v in payload.items() if k not in ("namespace", "name")
            }
            result = client._make_request("PUT", item_path, json=update)
            verb = "configured"
        else:
            result = client._make_request("POST", base_path, json=payload)
            verb = "created"

        if result is None:
            raise SystemExit(1)
        click.echo(f"{kind.lower()}/{payload['namespace']}/{payload['name']} {verb}")


@cli.command()
@click.argument("kind")
@click.option("--namespace", "-n", default=None, help="Namespace filter")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, kind, namespace, output):
    """List resources or resource groups"""
    kind = resolve_kind(kind)
    params = {"namespace": namespace} if namespace else {}
    result = client._make_request("GET", KIND_PATHS[kind], params=params)
    if result is None:
        raise SystemExit(1)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    if kind == "ResourceGroup":
        headers = ["NAMESPACE", "NAME", "PHASE", "GENERATION"]
        rows = [
            [g["namespace"], g["name"], g["phase"], g["generation"]] for g in result
        ]
    else:
        headers = ["NAMESPACE", "NAME", "GROUP", "GENERATION", "DELETING"]
        rows = [
            [
                r["namespace"],
                r["name"],
                r.get("group") or "<none>",
                r["generation"],
                "yes" if r.get("deleting") else "",
            ]
            for r in result
        ]
        if output == "wide":
            headers.append("FINALIZERS")
            for row, r in zip(rows, result):
                row.append(",".join(r.get("finalizers", [])) or "<none>")

    click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, kind, name, namespace, output):
    """Describe a resource or resource group"""
    kind = resolve_kind(kind)
    result = client._make_request("GET", f"{KIND_PATHS[kind]}/{namespace}/{name}")
    if result is None:
        raise SystemExit(1)

    if output == "yaml":
        click.echo(yaml.safe_dump(result, default_flow_style=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this?")
@click.pass_obj
def delete(client, kind, name, namespace):
    """Delete a resource (after teardown) or an empty resource group"""
    kind = resolve_kind(kind)
    result = client._make_request("DELETE", f"{KIND_PATHS[kind]}/{namespace}/{name}")
    if result is None:
        raise SystemExit(1)

    click.echo(result.get("message", f"{kind.lower()}/{namespace}/{name} deleted"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, name, namespace):
    """Manually trigger reconciliation for a resource"""
    result = client._make_request("POST", f"/resources/{namespace}/{name}/reconcile")
    if result is None:
        raise SystemExit(1)
    click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--add", "add", multiple=True, help="Finalizer to add")
@click.option("--remove", "remove", multiple=True, help="Finalizer to remove")
@click.pass_obj
def finalizers(client, name, namespace, add, remove):
    """Show, add or remove finalizers on a resource"""
    path = f"/resources/{namespace}/{name}"
    if add or remove:
        result = client._make_request(
            "PUT",
            f"{path}/finalizers",
            json={"add": list(add), "remove": list(remove)},
        )
    else:
        result = client._make_request("GET", path)
    if result is None:
        raise SystemExit(1)

    if "finalizers" in result:
        for finalizer in result["finalizers"] or ["<none>"]:
            click.echo(finalizer)
    else:
        click.echo(result.get("message", ""))


if __name__ == "__main__":
    cli()
