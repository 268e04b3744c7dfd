from __future__ import annotations

import ipaddress
import random
from typing import Optional


class SubnetAllocator:
    """Pick a /24 for a deployment inside the tenant's /16.

    The third octet is drawn at random from [octet_min, octet_max]. Two
    deployments can draw the same octet; the provider then rejects the second
    subnet and the deployment fails. Nothing here tracks allocations.
    """

    def __init__(
        self,
        *,
        tenant_network_cidr: str = "10.0.0.0/16",
        octet_min: int = 1,
        octet_max: int = 254,
        rng: Optional[random.Random] = None,
    ) -> None:
        network = ipaddress.IPv4Network(tenant_network_cidr)
        if network.prefixlen != 16:
            raise ValueError(f"Tenant network must be a /16, got {tenant_network_cidr}")
        if not (0 <= octet_min <= octet_max <= 255):
            raise ValueError(f"Invalid subnet octet range [{octet_min}, {octet_max}]")

        self._network = network
        self._octet_min = octet_min
        self._octet_max = octet_max
        self._rng = rng or random.SystemRandom()

    @property
    def tenant_network_cidr(self) -> str:
        return str(self._network)

    @property
    def octet_range(self) -> tuple[int, int]:
        return (self._octet_min, self._octet_max)

    def allocate_octet(self) -> int:
        return self._rng.randint(self._octet_min, self._octet_max)

    def subnet_cidr(self, octet: Optional[int] = None) -> str:
        if octet is None:
            octet = self.allocate_octet()
        if not (self._octet_min <= octet <= self._octet_max):
            raise ValueError(f"Octet {octet} outside [{self._octet_min}, {self._octet_max}]")

        first, second = self._network.network_address.packed[:2]
        return f"{first}.{second}.{octet}.0/24"
