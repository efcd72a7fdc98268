"""Broker host selection.

A host list such as ``"rabbit-a, rabbit-b;rabbit-c"`` is resolved to one host
per connection attempt using a fixed strategy:

- random (default): uniformly random host on every call
- sequential: round-robin in input order
- first: always the first host
"""

import random
import re
from typing import NamedTuple

from rmq_messaging.errors import ConfigurationError


_HOST_SEPARATORS = re.compile(r"[,;]")


def split_hosts(list_of_hosts: str | None) -> list[str]:
    """Split a ``,``/``;`` separated host list, dropping blank entries."""
    if not list_of_hosts:
        return []
    return [host.strip() for host in _HOST_SEPARATORS.split(list_of_hosts) if host.strip()]


class SelectedHost(NamedTuple):
    host: str
    index: int


class HostSelector:
    """Pick one host from a host list according to the configured strategy.

    The selector is stateful only for sequential selection, where it keeps the
    index of the next host to hand out.
    """

    def __init__(
        self,
        list_of_hosts: str,
        select_random: bool = True,
        select_sequential: bool = False,
    ):
        if not list_of_hosts or not list_of_hosts.strip():
            raise ConfigurationError("RabbitMQ hostname is required to build the URL.")

        self._hosts = split_hosts(list_of_hosts)
        if not self._hosts:
            raise ConfigurationError("No RabbitMQ hosts provided in the list.")

        self._select_random = select_random
        self._select_sequential = select_sequential
        self._next_index = 0

        self.current_host: str | None = None
        self.current_index: int = 0

    @property
    def hosts(self) -> list[str]:
        return list(self._hosts)

    def select(self) -> SelectedHost:
        """Return the host to use for the next connection attempt."""
        if len(self._hosts) == 1:
            index = 0
        elif self._select_random:
            index = random.randrange(len(self._hosts))  # nosec
        elif self._select_sequential:
            index = self._next_index
            self._next_index = (self._next_index + 1) % len(self._hosts)
        else:
            index = 0

        self.current_index = index
        self.current_host = self._hosts[index]
        return SelectedHost(self.current_host, index)
