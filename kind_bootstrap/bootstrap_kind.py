#!/usr/bin/env python3
"""Bring up a local kind cluster with cert-manager, MetalLB, ingress-nginx and Argo CD."""

import argparse
import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from kind_bootstrap import manifests
from kind_bootstrap.config import ClusterOptions, api_server_port, load_options, non_negative_int
from kind_bootstrap.errors import BootstrapError
from kind_bootstrap.manifests import HelmRelease, RegistryProxy
from kind_bootstrap.network import first_ipv4_subnet, metallb_address_range


class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[0;36m",
        logging.INFO: "\033[0;32m",
        logging.WARNING: "\033[1;33m",
        logging.ERROR: "\033[0;31m",
        logging.CRITICAL: "\033[0;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool) -> None:
        super().__init__("[%(asctime)s] %(levelname)s %(message)s", datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base
        color = self.COLORS.get(record.levelno, "")
        return f"{color}{base}{self.RESET}"


def build_logger(verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger("kind_bootstrap")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ColorFormatter(sys.stderr.isatty()))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger


class Bootstrapper:
    def __init__(
        self,
        options: ClusterOptions,
        *,
        delete_mode: bool = False,
        recreate: bool = False,
        verbose: bool = False,
    ) -> None:
        self.options = options
        self.delete_mode = delete_mode
        self.recreate = recreate

        # Filesystem layout
        self.ssl_dir = options.ssl_dir.resolve()
        self.root_ca_path = self.ssl_dir / "root-ca.pem"
        self.root_ca_key_path = self.ssl_dir / "root-ca-key.pem"
        self.dnsmasq_path = options.dnsmasq_dir / f"{options.cluster_name}.conf"
        self.installed_ca_path = options.ca_certificates_dir / "ca.crt"
        self.storage_dir = options.storage_dir.resolve() if options.storage_dir else None
        self.default_kubeconfig = Path.home() / ".kube/config"

        self._temp_dir = tempfile.TemporaryDirectory(prefix="kind-bootstrap-")

        self.env = os.environ.copy()
        if options.network != "kind":
            self.env["KIND_EXPERIMENTAL_DOCKER_NETWORK"] = options.network
        self.logger = build_logger(verbose)

    def __enter__(self) -> "Bootstrapper":
        return self

    def __exit__(self, exc_type, exc, traceback) -> bool:
        try:
            self.cleanup()
        except Exception as cleanup_exc:  # pragma: no cover - best-effort cleanup
            if exc_type is None:
                raise
            self.logger.exception(f"[Bootstrap] Cleanup failed: {cleanup_exc}")
        return False

    @property
    def cluster_name(self) -> str:
        return self.options.cluster_name

    @property
    def kind_context(self) -> str:
        return f"kind-{self.cluster_name}"

    @property
    def domain(self) -> str:
        return manifests.cluster_domain(self.cluster_name, self.options.base_domain)

    # --------------------------------------------------------- Execution flow
    def execute(self) -> None:
        self.init_environment()

        if self.delete_mode:
            self.logger.info(f"[Bootstrap] Starting delete workflow cluster={self.cluster_name}")
            self.teardown_cluster()
            self.logger.info(f"[Bootstrap] Delete workflow complete cluster={self.cluster_name}")
            return

        if self.recreate:
            self.logger.info(f"[Bootstrap] Recreating cluster={self.cluster_name}")
            self.teardown_cluster()

        self.bootstrap_flow()

    def cleanup(self) -> None:
        self._temp_dir.cleanup()

    # ---------------------------------------------------- Environment & dependencies
    def required_commands(self) -> List[str]:
        required = ["docker", "kind"]
        if not self.delete_mode:
            required.extend(["kubectl", "helm", "openssl", "htpasswd"])
        if self.options.host_steps:
            required.append("sudo")
        return required

    def init_environment(self) -> None:
        for command in self.required_commands():
            self.ensure_command(command)

        self.set_env_path("KUBECONFIG", self.default_kubeconfig)

        port = self.options.api_server_port or "auto"
        self.logger.info(f"[Bootstrap] Targeting cluster name={self.cluster_name} context={self.kind_context} api-port={port}")
        self.logger.info(f"[Network] Using Docker network name={self.options.network} domain={self.domain}")

    # ------------------------------------------------------- Create workflow
    def bootstrap_flow(self) -> None:
        self.logger.info(f"[Bootstrap] Starting create workflow cluster={self.cluster_name}")
        self.ensure_network()
        self.ensure_registry_proxies()
        self.ensure_root_ca()
        self.install_root_ca()
        self.create_cluster()
        self.use_kube_context()
        self.ensure_nodes_ready()
        self.install_cert_manager()
        self.apply_ca_secret()
        self.apply_ca_issuer()
        self.install_metallb()
        self.install_ingress()
        self.install_argocd()
        self.apply_argocd_application()
        self.configure_dns()
        self.restart_service("dnsmasq")
        self.logger.info(f"[Bootstrap] Cluster ready name={self.cluster_name} argocd=https://argocd.{self.domain}")

    # ------------------------------------------------------------- Delete flow
    def teardown_cluster(self) -> None:
        if self.cluster_exists():
            self.logger.info(f"[Cluster] Deleting kind cluster name={self.cluster_name}")
            self.run(["kind", "delete", "cluster", "--name", self.cluster_name], check=False)
        else:
            self.logger.info(f"[Cluster] Skipping delete reason=cluster-not-found name={self.cluster_name}")

        if not self.options.host_steps:
            self.logger.info("[Host] Skipping host cleanup reason=host-steps-disabled")
            return

        self.logger.info(f"[DNS] Removing dnsmasq config path={self.dnsmasq_path}")
        self.run(["sudo", "rm", "-f", str(self.dnsmasq_path)], check=False)
        self.restart_service("dnsmasq")
        self.logger.info(f"[CA] Removing installed root CA dir={self.options.ca_certificates_dir}")
        self.run(["sudo", "rm", "-rf", str(self.options.ca_certificates_dir)], check=False)
        self.run(["sudo", "update-ca-certificates", "--fresh"], capture_output=True)

    # ---------------------------------------------------- Docker network & proxies
    def docker_network_exists(self, name: str) -> bool:
        networks = self.run(["docker", "network", "ls", "--format", "{{.Name}}"], capture_output=True).stdout.splitlines()
        return any(line.strip() == name for line in networks)

    def ensure_network(self) -> None:
        name = self.options.network
        if self.docker_network_exists(name):
            self.logger.info(f"[Network] Skipping create reason=network-exists name={name}")
            return
        self.logger.info(f"[Network] Creating Docker network name={name}")
        self.run(["docker", "network", "create", name])

    def ensure_registry_proxies(self) -> None:
        if not self.options.proxies:
            self.logger.info("[Proxy] Skipping registry proxies reason=proxies-disabled")
            return
        for proxy in manifests.DEFAULT_PROXIES:
            self.ensure_registry_proxy(proxy)

    def ensure_registry_proxy(self, proxy: RegistryProxy) -> None:
        containers = self.run(["docker", "ps", "-a", "--format", "{{.Names}}"], capture_output=True).stdout.splitlines()
        if proxy.name not in (line.strip() for line in containers):
            self.logger.info(f"[Proxy] Creating registry proxy name={proxy.name} remote={proxy.remote_url}")
            self.run(
                [
                    "docker",
                    "run",
                    "-d",
                    "--name",
                    proxy.name,
                    "--restart=always",
                    f"--net={self.options.network}",
                    "-e",
                    f"REGISTRY_PROXY_REMOTEURL={proxy.remote_url}",
                    "registry:2",
                ],
                capture_output=True,
            )
            return

        running = self.run(
            ["docker", "container", "inspect", "-f", "{{.State.Running}}", proxy.name],
            check=False,
            capture_output=True,
        ).stdout.strip()
        if running == "true":
            self.logger.info(f"[Proxy] Skipping create reason=proxy-exists name={proxy.name}")
            return
        self.logger.info(f"[Proxy] Starting stopped registry proxy name={proxy.name}")
        self.run(["docker", "start", proxy.name], capture_output=True)

    # ---------------------------------------------------------- Certificate authority
    def ensure_root_ca(self) -> None:
        self.ssl_dir.mkdir(parents=True, exist_ok=True)
        if self.root_ca_path.exists() and self.root_ca_key_path.exists():
            self.logger.info(f"[CA] Skipping generation reason=root-ca-exists path={self.root_ca_path}")
            return

        self.logger.info(f"[CA] Generating root CA path={self.root_ca_path}")
        self.run(["openssl", "genrsa", "-out", str(self.root_ca_key_path), "2048"], capture_output=True)
        self.run(
            [
                "openssl",
                "req",
                "-x509",
                "-new",
                "-nodes",
                "-key",
                str(self.root_ca_key_path),
                "-days",
                "3650",
                "-sha256",
                "-out",
                str(self.root_ca_path),
                "-subj",
                "/CN=kube-ca",
            ],
            capture_output=True,
        )

    def install_root_ca(self) -> None:
        if not self.options.host_steps:
            self.logger.info("[CA] Skipping trust store install reason=host-steps-disabled")
            return
        self.require_root_ca()
        self.logger.info(f"[CA] Installing root CA into host trust store path={self.installed_ca_path}")
        self.run(["sudo", "mkdir", "-p", str(self.options.ca_certificates_dir)])
        self.run(["sudo", "cp", "-f", str(self.root_ca_path), str(self.installed_ca_path)])
        self.run(["sudo", "update-ca-certificates"], capture_output=True)

    def require_root_ca(self) -> None:
        missing = [str(path) for path in (self.root_ca_path, self.root_ca_key_path) if not path.exists()]
        if missing:
            raise BootstrapError(f"[CA] Root CA files missing paths={' '.join(missing)} action=rerun-without-delete")

    # ------------------------------------------------------- Kind cluster
    def cluster_exists(self) -> bool:
        clusters = self.run(["kind", "get", "clusters"], check=False, capture_output=True).stdout.splitlines()
        return any(line.strip() == self.cluster_name for line in clusters)

    def render_kind_config(self) -> Dict[str, Any]:
        return manifests.render_kind_config(
            self.cluster_name,
            workers=self.options.workers,
            ca_host_path=str(self.root_ca_path),
            api_server_port=self.options.api_server_port,
            oidc_issuer_url=self.options.oidc_issuer_url,
            proxies=manifests.DEFAULT_PROXIES if self.options.proxies else (),
            storage_host_path=str(self.storage_dir) if self.storage_dir else None,
        )

    def create_cluster(self) -> None:
        if self.cluster_exists():
            self.logger.info(f"[Cluster] Skipping create reason=cluster-exists name={self.cluster_name}")
            return

        self.require_root_ca()
        if self.storage_dir:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.write_manifests([self.render_kind_config()])

        self.logger.info(f"[Cluster] Pulling node image image={self.options.node_image}")
        self.run(["docker", "pull", self.options.node_image], capture_output=True)

        self.logger.info(f"[Cluster] Creating kind cluster name={self.cluster_name} workers={self.options.workers}")
        self.run(
            [
                "kind",
                "create",
                "cluster",
                "--name",
                self.cluster_name,
                "--image",
                self.options.node_image,
                "--config",
                str(config_path),
            ]
        )

    # ----------------------------------------------------------- Kubeconfig & kubectl
    def use_kube_context(self) -> None:
        self.run(["kind", "export", "kubeconfig", "--name", self.cluster_name], capture_output=True)

        current = (
            self.run(
                ["kubectl", "config", "current-context"],
                check=False,
                capture_output=True,
            ).stdout
            or ""
        ).strip()
        if current == self.kind_context:
            self.logger.info(f"[Kubeconfig] Using context={self.kind_context}")
            return

        contexts_output = self.run(
            ["kubectl", "config", "get-contexts", "-o", "name"],
            check=False,
            capture_output=True,
        ).stdout
        contexts = [line.strip() for line in contexts_output.splitlines() if line.strip()]
        if self.kind_context not in contexts:
            raise BootstrapError(f"[Kubeconfig] Context '{self.kind_context}' not found. Create the kind cluster first or rerun bootstrap.")

        self.logger.info(f"[Kubeconfig] Switching kubectl context to context={self.kind_context}")
        self.run(["kubectl", "config", "use-context", self.kind_context])

    def ensure_nodes_ready(self) -> None:
        self.logger.info("[Nodes] Waiting for all nodes to become Ready")
        try:
            self.run(
                [
                    "kubectl",
                    "wait",
                    "--for=condition=Ready",
                    "node",
                    "--all",
                    "--timeout=5m",
                ]
            )
        except subprocess.CalledProcessError as exc:
            raise BootstrapError("[Nodes] Timed out waiting for nodes Ready") from exc
        self.logger.info("[Nodes] All nodes are Ready")

    def ensure_namespace_exists(self, namespace: str) -> None:
        result = self.run(
            ["kubectl", "get", "namespace", namespace],
            check=False,
            capture_output=True,
        )
        if result.returncode == 0:
            return
        self.logger.info(f"[Kubernetes] Creating namespace name={namespace}")
        self.run(["kubectl", "create", "namespace", namespace])

    def kubectl_apply(self, documents: Sequence[Dict[str, Any]], namespace: Optional[str] = None) -> None:
        path = self.write_manifests(documents)
        cmd = ["kubectl", "apply"]
        if namespace:
            cmd.extend(["-n", namespace])
        cmd.extend(["-f", str(path)])
        self.run(cmd)

    # -------------------------------------------------------- Helm
    def helm_install(
        self,
        release: HelmRelease,
        values: Optional[Dict[str, Any]] = None,
        *,
        create_namespace: bool = True,
    ) -> None:
        self.logger.info(f"[Helm] Installing release={release.release} namespace={release.namespace} repo={release.repo}")
        cmd = [
            "helm",
            "upgrade",
            "--install",
            "--wait",
            "--timeout",
            self.options.helm_timeout,
            "--atomic",
            "--namespace",
            release.namespace,
        ]
        if create_namespace:
            cmd.append("--create-namespace")
        cmd.extend(["--repo", release.repo, release.release, release.chart])
        if values:
            cmd.extend(["--values", str(self.write_manifests([values]))])
        self.run(cmd)

    # -------------------------------------------------------- cert-manager
    def install_cert_manager(self) -> None:
        self.helm_install(manifests.CERT_MANAGER, manifests.cert_manager_values())

    def apply_ca_secret(self) -> None:
        namespace = manifests.CERT_MANAGER.namespace
        self.require_root_ca()
        self.logger.info(f"[CA] Recreating TLS secret name={manifests.CA_SECRET_NAME} namespace={namespace}")
        self.run(
            ["kubectl", "delete", "secret", "-n", namespace, manifests.CA_SECRET_NAME, "--ignore-not-found"],
            capture_output=True,
        )
        self.run(
            [
                "kubectl",
                "create",
                "secret",
                "tls",
                "-n",
                namespace,
                manifests.CA_SECRET_NAME,
                f"--cert={self.root_ca_path}",
                f"--key={self.root_ca_key_path}",
            ]
        )

    def apply_ca_issuer(self) -> None:
        self.logger.info(f"[CA] Applying ClusterIssuer name={manifests.CA_ISSUER_NAME}")
        self.kubectl_apply([manifests.ca_cluster_issuer()], namespace=manifests.CERT_MANAGER.namespace)

    # ------------------------------------------------------------- MetalLB
    def docker_network_subnet(self) -> str:
        output = self.run(["docker", "network", "inspect", self.options.network], capture_output=True).stdout
        subnet = first_ipv4_subnet(output)
        if not subnet:
            raise BootstrapError(f"[MetalLB] No IPv4 subnet found network={self.options.network}")
        return subnet

    def install_metallb(self) -> None:
        subnet = self.docker_network_subnet()
        start_ip, end_ip = metallb_address_range(subnet)
        self.helm_install(manifests.METALLB)
        self.logger.info(f"[MetalLB] Applying address pool subnet={subnet} range={start_ip}-{end_ip}")
        self.kubectl_apply(manifests.metallb_manifests(start_ip, end_ip))

    # ------------------------------------------------------------- Ingress
    def install_ingress(self) -> None:
        self.helm_install(manifests.INGRESS_NGINX, manifests.ingress_nginx_values())

    def ingress_load_balancer_ip(self) -> str:
        attempts = max(self.options.ingress_ip_attempts, 1)
        for attempt in range(1, attempts + 1):
            address = self.run(
                [
                    "kubectl",
                    "get",
                    "svc",
                    "-n",
                    manifests.INGRESS_NGINX.namespace,
                    "ingress-nginx-controller",
                    "-o",
                    "jsonpath={.status.loadBalancer.ingress[0].ip}",
                ],
                check=False,
                capture_output=True,
            ).stdout.strip()
            if address:
                return address
            if attempt < attempts:
                self.logger.debug(f"[Ingress] Waiting for load balancer IP attempt={attempt}/{attempts}")
                time.sleep(self.options.ingress_ip_interval)
        raise BootstrapError("[Ingress] No load balancer IP assigned service=ingress-nginx-controller action=check-metallb-pool")

    # -------------------------------------------------------------- Argo CD
    def install_argocd(self) -> None:
        self.ensure_namespace_exists(manifests.ARGOCD.namespace)
        self.helm_install(manifests.ARGOCD, manifests.argocd_values(self.domain), create_namespace=False)
        self.set_argocd_admin_password()

    def hash_password(self, password: str) -> str:
        output = self.run(["htpasswd", "-bnBC", "10", "", password], capture_output=True).stdout
        return output.replace(":", "").replace("\n", "").strip()

    def set_argocd_admin_password(self) -> None:
        patch = manifests.argocd_password_patch(self.hash_password(self.options.argocd_admin_password))
        self.logger.info("[ArgoCD] Setting admin password secret=argocd-secret")
        self.run(
            [
                "kubectl",
                "-n",
                manifests.ARGOCD.namespace,
                "patch",
                "secret",
                "argocd-secret",
                "-p",
                json.dumps(patch),
            ]
        )

    def apply_argocd_application(self) -> None:
        if not self.options.argocd_app_repo:
            self.logger.info("[ArgoCD] Skipping app-of-apps reason=no-repo-configured")
            return
        name = f"{self.cluster_name}-apps"
        self.logger.info(f"[ArgoCD] Applying Application name={name} repo={self.options.argocd_app_repo} path={self.options.argocd_app_path}")
        self.kubectl_apply(
            [
                manifests.argocd_application(
                    name,
                    self.options.argocd_app_repo,
                    self.options.argocd_app_revision,
                    self.options.argocd_app_path,
                )
            ]
        )

    # ------------------------------------------------------------------ DNS
    def configure_dns(self) -> None:
        if not self.options.host_steps:
            self.logger.info("[DNS] Skipping dnsmasq reason=host-steps-disabled")
            return

        address = self.ingress_load_balancer_ip()
        content = manifests.dnsmasq_config(self.domain, address)
        if self.dnsmasq_path.exists() and self.dnsmasq_path.read_text(encoding="utf-8") == content:
            self.logger.info(f"[DNS] Skipping write reason=config-unchanged path={self.dnsmasq_path}")
            return

        self.logger.info(f"[DNS] Writing dnsmasq config path={self.dnsmasq_path} domain={self.domain} address={address}")
        self.run(["sudo", "mkdir", "-p", str(self.options.dnsmasq_dir)])
        self.run(["sudo", "tee", str(self.dnsmasq_path)], input=content, capture_output=True)

    def restart_service(self, name: str) -> None:
        if not self.options.host_steps:
            self.logger.info(f"[Host] Skipping restart reason=host-steps-disabled service={name}")
            return
        self.logger.info(f"[Host] Restarting service name={name}")
        self.run(["sudo", "systemctl", "restart", name])

    # --------------------------------------------------------------- Helpers
    def ensure_command(self, name: str) -> None:
        if shutil.which(name) is None:
            raise BootstrapError(f"[Deps] {name} is required but not found in PATH")

    def set_env_path(self, key: str, default_path: Optional[Path] = None) -> None:
        value = self.env.get(key)
        if not value and default_path and default_path.exists():
            value = str(default_path)
        if value:
            self.env[key] = value

    def make_temp_file(self, suffix: str = ".yaml") -> Path:
        temp_dir_path = Path(self._temp_dir.name)
        fd, path = tempfile.mkstemp(prefix="tmp-", suffix=suffix, dir=temp_dir_path)
        os.close(fd)
        return Path(path)

    def write_manifests(self, documents: Sequence[Dict[str, Any]]) -> Path:
        path = self.make_temp_file(suffix=".yaml")
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump_all(documents, handle, sort_keys=False)
        return path

    def run(
        self,
        cmd: List[str],
        *,
        check: bool = True,
        capture_output: bool = False,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        self.logger.debug(f"[Exec] {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            check=check,
            text=True,
            capture_output=capture_output,
            input=input,
            env=self.env,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="create-kind-cluster",
        description="Bootstrap or delete a local kind cluster with cert-manager, MetalLB, ingress-nginx and Argo CD.",
    )
    parser.add_argument("name", nargs="?", default=None, help="Name of the kind cluster (default: kind)")
    parser.add_argument(
        "api_server_port",
        nargs="?",
        type=api_server_port,
        default=None,
        help="Host port for the API server, 1024-65535 (default: chosen by kind)",
    )
    parser.add_argument("-w", "--workers", type=non_negative_int, default=None, help="Number of worker nodes (default: 3); replaces the old positional form 'NAME WORKERS'")
    parser.add_argument("--storage-dir", default=None, help="Host directory mounted into every worker at /mnt/storage")
    parser.add_argument("--node-image", default=None, help="kind node image (default: kindest/node:v1.31.0)")
    parser.add_argument("--no-proxies", action="store_true", help="Do not run registry pull-through proxies")
    parser.add_argument("--skip-host", action="store_true", help="Skip steps that need sudo (CA trust store, dnsmasq)")
    parser.add_argument("--oidc-issuer-url", default=None, help="Configure API server OIDC auth against this issuer")
    parser.add_argument("--argocd-app-repo", default=None, help="Git repository for the Argo CD app-of-apps Application")
    parser.add_argument("--argocd-app-revision", default=None, help="Revision tracked by the app-of-apps (default: main)")
    parser.add_argument("--argocd-app-path", default=None, help="Path inside the repository (default: argocd)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every command before it runs")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "-d",
        "--delete",
        "--destroy",
        dest="delete",
        action="store_true",
        help="Delete the kind cluster and its host configuration instead of creating it",
    )
    mode.add_argument("--recreate", action="store_true", help="Delete any existing cluster before creating it")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    try:
        options = load_options(args)
    except BootstrapError as exc:
        build_logger().error(str(exc))
        raise SystemExit(1) from exc

    with Bootstrapper(options, delete_mode=args.delete, recreate=args.recreate, verbose=args.verbose) as bootstrapper:
        try:
            bootstrapper.execute()
        except (BootstrapError, subprocess.CalledProcessError) as exc:
            message = str(exc)
            if isinstance(exc, subprocess.CalledProcessError) and exc.stderr:
                message = f"{message}\n{exc.stderr.strip()}"
            bootstrapper.logger.exception(message)
            raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
