# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Network management for services: host port allocation and the address facts
a service exposes to its output templates.
"""
import logging
import socket
from typing import Dict

from ..errors import StartError
from ..MODELS.service_descriptor import ServiceDescriptor

logger = logging.getLogger(__name__)


def get_free_port(host: str = "") -> int:
    """
    Finds a free port on the host.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def is_port_free(port: int, host: str = "") -> bool:
    """
    Checks if a port can be bound on the host.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


class NetworkManager:
    """
    Allocates host ports for services and tracks which service owns them.
    """
    def __init__(self, host: str = "127.0.0.1"):
        """
        Initializes the network manager.

        :param host: Address services are reachable on.
        """
        self.host = host
        self.service_ports: Dict[str, Dict[int, int]] = {}  # service -> {container_port: host_port}
        self.host_port_to_service: Dict[int, str] = {}

    def allocate_ports(self, descriptor: ServiceDescriptor) -> Dict[int, int]:
        """
        Allocates host ports for a service. Ports without a published host port
        get a free one. Allocation is stable across restarts of the same service.

        :param descriptor: The service descriptor.
        :return: Mapping from container port to allocated host port.
        :raises StartError: If a requested host port is already taken.
        """
        if descriptor.id in self.service_ports:
            return dict(self.service_ports[descriptor.id])

        mappings = {}
        for container_port, host_port in sorted(descriptor.start.ports.items()):
            if host_port is None:
                allocated_port = get_free_port()
            else:
                owner = self.host_port_to_service.get(host_port)
                if owner is not None and owner != descriptor.id:
                    raise StartError(f"Port {host_port} is already allocated to {owner}")
                if not is_port_free(host_port):
                    raise StartError(
                        f"Port {host_port} is already in use, cannot start service {descriptor.id}"
                    )
                allocated_port = host_port

            mappings[container_port] = allocated_port
            self.host_port_to_service[allocated_port] = descriptor.id

        self.service_ports[descriptor.id] = mappings
        if mappings:
            logger.debug("Allocated ports for %s: %s", descriptor.id, mappings)
        return dict(mappings)

    def address_facts(self, service_id: str) -> Dict[str, str]:
        """
        Variables describing where a service can be reached:
        HOST, PORT (the first mapped port) and PORT_<container port>.
        """
        facts = {"HOST": self.host, "SERVICE_ID": service_id}
        ports = self.service_ports.get(service_id, {})
        for index, container_port in enumerate(sorted(ports)):
            if index == 0:
                facts["PORT"] = str(ports[container_port])
            facts[f"PORT_{container_port}"] = str(ports[container_port])
        return facts
