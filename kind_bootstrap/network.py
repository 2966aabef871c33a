"""Docker network helpers for the MetalLB address pool."""

import ipaddress
import json
from typing import Any, List, Optional, Tuple

from kind_bootstrap.errors import BootstrapError

POOL_START_SUFFIX = "255.200"
POOL_END_SUFFIX = "255.250"


def subnet_to_ip(subnet: str, suffix: str) -> str:
    """Swap the trailing ``0.0/16`` of a Docker subnet for a host suffix.

    ``subnet_to_ip("172.18.0.0/16", "255.200")`` gives ``172.18.255.200``.
    """
    try:
        network = ipaddress.ip_network(subnet.strip(), strict=True)
    except ValueError as exc:
        raise BootstrapError(f"[MetalLB] Invalid subnet value={subnet!r}") from exc

    if network.version != 4 or network.prefixlen != 16:
        raise BootstrapError(f"[MetalLB] Expected an IPv4 /16 subnet value={subnet} action=recreate-docker-network")

    prefix = str(network.network_address).rsplit(".", 2)[0]
    address = f"{prefix}.{suffix}"
    # Reject suffixes like "256.1" that would not form a valid address.
    try:
        ipaddress.IPv4Address(address)
    except ValueError as exc:
        raise BootstrapError(f"[MetalLB] Invalid address suffix={suffix}") from exc
    return address


def metallb_address_range(subnet: str) -> Tuple[str, str]:
    return subnet_to_ip(subnet, POOL_START_SUFFIX), subnet_to_ip(subnet, POOL_END_SUFFIX)


def first_ipv4_subnet(inspect_output: str) -> Optional[str]:
    """Return the first IPv4 subnet from ``docker network inspect`` JSON output."""
    if not inspect_output.strip():
        return None
    try:
        data: Any = json.loads(inspect_output)
    except json.JSONDecodeError:
        return None

    if isinstance(data, list):
        data = data[0] if data else {}
    configs: List[Any] = ((data or {}).get("IPAM") or {}).get("Config") or []
    for config in configs:
        subnet = (config or {}).get("Subnet") or ""
        if not subnet:
            continue
        try:
            if ipaddress.ip_network(subnet, strict=False).version == 4:
                return subnet
        except ValueError:
            continue
    return None
