"""Payloads handed to kind, helm, kubectl and dnsmasq."""

from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import yaml

KIND_API_VERSION = "kind.x-k8s.io/v1alpha4"
CA_CONTAINER_PATH = "/opt/ca-certificates/root-ca.pem"
STORAGE_CONTAINER_PATH = "/mnt/storage"
CA_SECRET_NAME = "root-ca"
CA_ISSUER_NAME = "ca-issuer"
METALLB_POOL_NAME = "default-pool"
PROXY_PORT = 5000


class RegistryProxy(NamedTuple):
    name: str
    remote_url: str
    upstream: str


class HelmRelease(NamedTuple):
    release: str
    chart: str
    repo: str
    namespace: str


DEFAULT_PROXIES = (
    RegistryProxy("proxy-docker-hub", "https://registry-1.docker.io", "docker.io"),
    RegistryProxy("proxy-quay", "https://quay.io", "quay.io"),
    RegistryProxy("proxy-gcr", "https://gcr.io", "gcr.io"),
    RegistryProxy("proxy-k8s-gcr", "https://k8s.gcr.io", "k8s.gcr.io"),
)

CERT_MANAGER = HelmRelease("cert-manager", "cert-manager", "https://charts.jetstack.io", "cert-manager")
METALLB = HelmRelease("metallb", "metallb", "https://metallb.github.io/metallb", "metallb-system")
INGRESS_NGINX = HelmRelease("ingress-nginx", "ingress-nginx", "https://kubernetes.github.io/ingress-nginx", "ingress-nginx")
ARGOCD = HelmRelease("argo-cd", "argo-cd", "https://argoproj.github.io/argo-helm", "argocd")


def cluster_domain(cluster_name: str, base_domain: str) -> str:
    """The default ``kind`` cluster owns the bare base domain; others get a subdomain."""
    if cluster_name == "kind":
        return base_domain
    return f"{cluster_name}.{base_domain}"


# ---------------------------------------------------------------- Kind config
def cluster_configuration_patch(oidc_issuer_url: Optional[str] = None) -> str:
    api_server: Dict[str, Any] = {
        "extraVolumes": [
            {
                "name": "opt-ca-certificates",
                "hostPath": CA_CONTAINER_PATH,
                "mountPath": CA_CONTAINER_PATH,
                "readOnly": True,
                "pathType": "File",
            }
        ]
    }
    if oidc_issuer_url:
        api_server["extraArgs"] = {
            "oidc-client-id": "kube",
            "oidc-issuer-url": oidc_issuer_url,
            "oidc-username-claim": "email",
            "oidc-groups-claim": "groups",
            "oidc-ca-file": CA_CONTAINER_PATH,
        }

    patch = {
        "kind": "ClusterConfiguration",
        "apiServer": api_server,
        "controllerManager": {"extraArgs": {"bind-address": "0.0.0.0"}},
        "etcd": {"local": {"extraArgs": {"listen-metrics-urls": "http://0.0.0.0:2381"}}},
        "scheduler": {"extraArgs": {"bind-address": "0.0.0.0"}},
    }
    # kubeadm patches are embedded as YAML strings
    return yaml.safe_dump(patch, sort_keys=False)


def containerd_mirror_patch(proxies: Sequence[RegistryProxy]) -> str:
    lines = []
    for proxy in proxies:
        lines.append(f'[plugins."io.containerd.grpc.v1.cri".registry.mirrors."{proxy.upstream}"]')
        lines.append(f'  endpoint = ["http://{proxy.name}:{PROXY_PORT}"]')
    return "\n".join(lines) + "\n"


def render_kind_config(
    name: str,
    *,
    workers: int,
    ca_host_path: str,
    api_server_port: Optional[int] = None,
    oidc_issuer_url: Optional[str] = None,
    proxies: Sequence[RegistryProxy] = (),
    storage_host_path: Optional[str] = None,
) -> Dict[str, Any]:
    networking: Dict[str, Any] = {"disableDefaultCNI": False}
    if api_server_port is not None:
        networking["apiServerAddress"] = "127.0.0.1"
        networking["apiServerPort"] = api_server_port

    mounts = [{"hostPath": ca_host_path, "containerPath": CA_CONTAINER_PATH, "readOnly": True}]
    nodes: List[Dict[str, Any]] = [{"role": "control-plane", "extraMounts": [dict(m) for m in mounts]}]
    worker_mounts = [dict(m) for m in mounts]
    if storage_host_path:
        # shared host directory for local persistent volumes
        worker_mounts.append({"hostPath": storage_host_path, "containerPath": STORAGE_CONTAINER_PATH})
    for _ in range(workers):
        nodes.append({"role": "worker", "extraMounts": [dict(m) for m in worker_mounts]})

    config: Dict[str, Any] = {
        "kind": "Cluster",
        "apiVersion": KIND_API_VERSION,
        "name": name,
        "networking": networking,
        "kubeadmConfigPatches": [cluster_configuration_patch(oidc_issuer_url)],
    }
    if proxies:
        config["containerdConfigPatches"] = [containerd_mirror_patch(proxies)]
    config["nodes"] = nodes
    return config


# ------------------------------------------------------------- Helm values
def cert_manager_values() -> Dict[str, Any]:
    return {"installCRDs": True}


def ingress_nginx_values() -> Dict[str, Any]:
    return {"defaultBackend": {"enabled": True}}


def argocd_values(domain: str) -> Dict[str, Any]:
    hostname = f"argocd.{domain}"
    return {
        "dex": {"enabled": False},
        "redis": {"enabled": True},
        "redis-ha": {"enabled": False},
        "repoServer": {"serviceAccount": {"create": True}},
        "server": {
            "volumeMounts": [
                {
                    "mountPath": "/etc/ssl/certs/root-ca.pem",
                    "name": "opt-ca-certificates",
                    "readOnly": True,
                }
            ],
            "volumes": [
                {
                    "name": "opt-ca-certificates",
                    "hostPath": {"path": CA_CONTAINER_PATH, "type": "File"},
                }
            ],
            "config": {
                "url": f"https://{hostname}",
                "application.instanceLabelKey": "argocd.argoproj.io/instance",
                "resource.compareoptions": "ignoreResourceStatusField: all\n",
            },
            "extraArgs": ["--insecure"],
            "ingress": {
                "annotations": {"cert-manager.io/cluster-issuer": CA_ISSUER_NAME},
                "enabled": True,
                "ingressClassName": "nginx",
                "hostname": hostname,
                "tls": [{"secretName": hostname, "hosts": [hostname]}],
            },
        },
    }


# ------------------------------------------------------------- Kubernetes
def ca_cluster_issuer() -> Dict[str, Any]:
    return {
        "apiVersion": "cert-manager.io/v1",
        "kind": "ClusterIssuer",
        "metadata": {"name": CA_ISSUER_NAME},
        "spec": {"ca": {"secretName": CA_SECRET_NAME}},
    }


def metallb_manifests(start_ip: str, end_ip: str) -> List[Dict[str, Any]]:
    return [
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "IPAddressPool",
            "metadata": {"name": METALLB_POOL_NAME, "namespace": METALLB.namespace},
            "spec": {"addresses": [f"{start_ip}-{end_ip}"]},
        },
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "L2Advertisement",
            "metadata": {"name": "default-l2", "namespace": METALLB.namespace},
            "spec": {"ipAddressPools": [METALLB_POOL_NAME]},
        },
    ]


def argocd_application(name: str, repo_url: str, revision: str = "main", path: str = "argocd") -> Dict[str, Any]:
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": name, "namespace": ARGOCD.namespace},
        "spec": {
            "project": "default",
            "source": {"repoURL": repo_url, "targetRevision": revision, "path": path},
            "destination": {"server": "https://kubernetes.default.svc", "namespace": ARGOCD.namespace},
            "syncPolicy": {"automated": {"prune": True, "selfHeal": True}},
        },
    }


def argocd_password_patch(bcrypt_hash: str) -> Dict[str, Any]:
    return {"stringData": {"admin.password": bcrypt_hash}}


# ---------------------------------------------------------------- dnsmasq
def dnsmasq_config(domain: str, address: str) -> str:
    """A single ``address=`` line resolves the domain and all of its subdomains."""
    return f"address=/{domain}/{address}\n"
