"""
Kubernetes client construction.

Turns kubeconfig bytes into a fresh ``ClientBundle`` and performs the
discovery probe. Nothing here is cached; sharing is the pool's job.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.config import incluster_config

from kubedeck.exceptions import (
    AuthFailureError,
    MalformedError,
    UnreachableError,
    UnsupportedError,
)


logger = structlog.get_logger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0
SUPPORTED_AUTH_PROVIDERS = frozenset({"oidc", "gcp", "azure"})


@dataclass(frozen=True)
class ClientBundle:
    """REST configuration plus the typed and discovery clients built on it."""

    configuration: client.Configuration
    api_client: client.ApiClient
    core_v1: client.CoreV1Api
    version_api: client.VersionApi
    context: str = ""

    @property
    def server(self) -> str:
        return self.configuration.host or ""

    def typed(self, api_cls):
        """Any generated API group bound to this bundle, e.g. ``bundle.typed(client.AppsV1Api)``."""
        return api_cls(self.api_client)

    def dynamic(self):
        # DynamicClient performs discovery on construction, so it is built on demand
        from kubernetes.dynamic import DynamicClient

        return DynamicClient(self.api_client)

    def close(self) -> None:
        try:
            self.api_client.close()
        except Exception as exc:  # pragma: no cover - best effort on shutdown paths
            logger.debug("kubernetes.bundle_close_failed", error=str(exc))


def _named(entries: Any, kind: str) -> Dict[str, Dict[str, Any]]:
    if entries is None:
        return {}
    if not isinstance(entries, list):
        raise MalformedError(f"kubeconfig '{kind}' must be a list")
    named: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise MalformedError(f"kubeconfig '{kind}' entries need a name")
        named[str(entry["name"])] = entry
    return named


def parse_kubeconfig(kubeconfig: bytes) -> tuple[Dict[str, Any], str]:
    """Parse and shape-check a kubeconfig; returns (document, selected context)."""
    if not kubeconfig:
        raise MalformedError("kubeconfig is empty")
    try:
        doc = yaml.safe_load(kubeconfig)
    except yaml.YAMLError:
        raise MalformedError("kubeconfig is not valid YAML") from None
    if not isinstance(doc, dict):
        raise MalformedError("kubeconfig must be a YAML mapping")

    contexts = _named(doc.get("contexts"), "contexts")
    clusters = _named(doc.get("clusters"), "clusters")
    users = _named(doc.get("users"), "users")
    if not contexts:
        raise MalformedError("kubeconfig declares no contexts")

    selected = doc.get("current-context") or ""
    if not selected:
        if len(contexts) != 1:
            raise MalformedError("kubeconfig has several contexts and no current-context")
        selected = next(iter(contexts))
    if selected not in contexts:
        raise MalformedError(f"current-context '{selected}' is not declared")

    ctx = contexts[selected].get("context") or {}
    if not isinstance(ctx, dict) or ctx.get("cluster") not in clusters:
        raise MalformedError(f"context '{selected}' references an unknown cluster")
    user_name = ctx.get("user")
    if user_name:
        if user_name not in users:
            raise MalformedError(f"context '{selected}' references an unknown user")
        user = users[user_name].get("user") or {}
        provider = user.get("auth-provider") if isinstance(user, dict) else None
        if provider:
            provider_name = provider.get("name") if isinstance(provider, dict) else None
            if provider_name not in SUPPORTED_AUTH_PROVIDERS:
                raise UnsupportedError(f"auth provider '{provider_name}' is not supported")
    return doc, selected


class ClientFactory:
    """Builds client bundles from kubeconfig bytes and probes them."""

    def __init__(self, probe_timeout: float = DEFAULT_PROBE_TIMEOUT):
        self.probe_timeout = probe_timeout

    def build(self, kubeconfig: bytes) -> ClientBundle:
        doc, context = parse_kubeconfig(kubeconfig)

        configuration = client.Configuration()
        try:
            config.load_kube_config_from_dict(
                doc,
                context=context,
                client_configuration=configuration,
                persist_config=False,
            )
        except ConfigException as exc:
            logger.info("kubernetes.kubeconfig_rejected", context=context, error=str(exc))
            raise MalformedError(f"kubeconfig could not be loaded: {exc}") from None
        except (ValueError, TypeError, KeyError) as exc:
            logger.info("kubernetes.kubeconfig_invalid", context=context, error=exc.__class__.__name__)
            raise MalformedError("kubeconfig could not be loaded") from None

        api_client = client.ApiClient(configuration=configuration)
        logger.debug("kubernetes.bundle_built", context=context, server=configuration.host)
        return ClientBundle(
            configuration=configuration,
            api_client=api_client,
            core_v1=client.CoreV1Api(api_client),
            version_api=client.VersionApi(api_client),
            context=context,
        )

    def probe(self, bundle: ClientBundle, timeout: Optional[float] = None) -> str:
        """Discovery call returning the server git version."""
        deadline = timeout or self.probe_timeout
        try:
            info = bundle.version_api.get_code(_request_timeout=deadline)
        except ApiException as exc:
            if exc.status in (401, 403):
                raise AuthFailureError(
                    f"API server {bundle.server} rejected the credentials ({exc.status})"
                ) from None
            raise UnreachableError(
                f"API server {bundle.server} answered {exc.status} to discovery"
            ) from None
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            logger.info("kubernetes.probe_unreachable", server=bundle.server, error=exc.__class__.__name__)
            raise UnreachableError(f"API server {bundle.server} is unreachable") from None
        return getattr(info, "git_version", None) or ""


def in_cluster_kubeconfig() -> bytes:
    """Kubeconfig pointing at this pod's service account files.

    Token and CA are referenced by path so rotated tokens are picked up.
    """
    host = os.environ.get(incluster_config.SERVICE_HOST_ENV_NAME)
    port = os.environ.get(incluster_config.SERVICE_PORT_ENV_NAME)
    if not host or not port:
        raise MalformedError("not running inside a cluster: service host/port env vars are unset")
    if not os.path.isfile(incluster_config.SERVICE_TOKEN_FILENAME):
        raise MalformedError("service account token file is missing")

    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    doc = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": "in-cluster",
                "cluster": {
                    "server": f"https://{host}:{port}",
                    "certificate-authority": incluster_config.SERVICE_CERT_FILENAME,
                },
            }
        ],
        "users": [{"name": "service-account", "user": {"tokenFile": incluster_config.SERVICE_TOKEN_FILENAME}}],
        "contexts": [{"name": "in-cluster", "context": {"cluster": "in-cluster", "user": "service-account"}}],
        "current-context": "in-cluster",
    }
    return yaml.safe_dump(doc, sort_keys=False).encode("utf-8")
