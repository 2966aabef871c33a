"""Resolve cluster options from CLI arguments, environment and defaults."""

import argparse
import os
from pathlib import Path
from typing import Mapping, NamedTuple, Optional

from kind_bootstrap.errors import BootstrapError

DEFAULT_CLUSTER_NAME = "kind"
DEFAULT_NODE_IMAGE = "kindest/node:v1.31.0"
DEFAULT_NETWORK = "kind"
DEFAULT_DOMAIN = "kind.cluster"
DEFAULT_WORKERS = 3
MIN_API_SERVER_PORT = 1024
MAX_API_SERVER_PORT = 65535


class ClusterOptions(NamedTuple):
    cluster_name: str = DEFAULT_CLUSTER_NAME
    api_server_port: Optional[int] = None
    workers: int = DEFAULT_WORKERS
    node_image: str = DEFAULT_NODE_IMAGE
    network: str = DEFAULT_NETWORK
    base_domain: str = DEFAULT_DOMAIN
    proxies: bool = True
    host_steps: bool = True
    oidc_issuer_url: Optional[str] = None
    argocd_admin_password: str = "admin123"
    argocd_app_repo: str = ""
    argocd_app_revision: str = "main"
    argocd_app_path: str = "argocd"
    ssl_dir: Path = Path(".ssl")
    storage_dir: Optional[Path] = None
    dnsmasq_dir: Path = Path("/etc/dnsmasq.d")
    ca_certificates_dir: Path = Path("/usr/local/share/ca-certificates/kind.cluster")
    helm_timeout: str = "15m"
    ingress_ip_attempts: int = 30
    ingress_ip_interval: float = 5.0


def api_server_port(value: str) -> int:
    """argparse type for the API server port positional."""
    if not value.isdigit():
        raise argparse.ArgumentTypeError(f"API server port must be a number between {MIN_API_SERVER_PORT} and {MAX_API_SERVER_PORT}, got {value!r}")
    port = int(value)
    if port < MIN_API_SERVER_PORT or port > MAX_API_SERVER_PORT:
        raise argparse.ArgumentTypeError(f"API server port must be a number between {MIN_API_SERVER_PORT} and {MAX_API_SERVER_PORT}, got {port}")
    return port


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}") from exc
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {number}")
    return number


def env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise BootstrapError(f"[Config] {key} must be an integer value={raw!r}") from exc


def env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise BootstrapError(f"[Config] {key} must be a number value={raw!r}") from exc


def load_options(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> ClusterOptions:
    env = os.environ if environ is None else environ

    workers = args.workers if args.workers is not None else env_int(env, "KIND_WORKERS", DEFAULT_WORKERS)
    if workers < 0:
        raise BootstrapError(f"[Config] KIND_WORKERS must not be negative value={workers}")

    storage = args.storage_dir or env.get("KIND_STORAGE_DIR")
    storage_dir = Path(storage) if storage else None

    return ClusterOptions(
        cluster_name=args.name or DEFAULT_CLUSTER_NAME,
        api_server_port=args.api_server_port,
        workers=workers,
        node_image=args.node_image or env.get("KIND_NODE_IMAGE") or DEFAULT_NODE_IMAGE,
        network=env.get("KIND_NETWORK") or DEFAULT_NETWORK,
        base_domain=env.get("DNSMASQ_DOMAIN") or DEFAULT_DOMAIN,
        proxies=not args.no_proxies,
        host_steps=not args.skip_host,
        oidc_issuer_url=args.oidc_issuer_url or env.get("OIDC_ISSUER_URL") or None,
        argocd_admin_password=env.get("ARGOCD_ADMIN_PASSWORD") or "admin123",
        argocd_app_repo=args.argocd_app_repo or env.get("ARGOCD_APP_REPO") or "",
        argocd_app_revision=args.argocd_app_revision or env.get("ARGOCD_APP_REVISION") or "main",
        argocd_app_path=args.argocd_app_path or env.get("ARGOCD_APP_PATH") or "argocd",
        ssl_dir=Path(env.get("KIND_SSL_DIR") or ".ssl"),
        storage_dir=storage_dir,
        dnsmasq_dir=Path(env.get("DNSMASQ_DIR") or "/etc/dnsmasq.d"),
        ca_certificates_dir=Path(env.get("CA_CERTIFICATES_DIR") or "/usr/local/share/ca-certificates/kind.cluster"),
        helm_timeout=env.get("HELM_TIMEOUT") or "15m",
        ingress_ip_attempts=env_int(env, "INGRESS_IP_ATTEMPTS", 30),
        ingress_ip_interval=env_float(env, "INGRESS_IP_INTERVAL", 5.0),
    )
