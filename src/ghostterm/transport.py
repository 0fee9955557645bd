"""
GhostTerm - Transport collaborator interface.

Created by orpheus497

The engine never touches sockets. Everything it needs from the network is
expressed by the Transport base class below: an endpoint identity, a way to
open or join a gossip group, a byte-level broadcast, and two async streams
for inbound frames and newly reachable peers. Transport parallelism only
ever reaches the engine through those streams.

ghostterm.network.DirectTransport is the bundled implementation; tests use
in-memory fakes with the same surface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Tuple

from .ticket import AddressHint, ConnectionDescriptor


@dataclass(frozen=True)
class Endpoint:
    """Local network identity returned by create_endpoint()."""

    peer_id: bytes
    address_hints: Tuple[AddressHint, ...] = field(default_factory=tuple)
    relay_hint: Optional[str] = None

    @property
    def peer_id_hex(self) -> str:
        return self.peer_id.hex()


@dataclass(frozen=True)
class PeerAddress:
    """A peer that became reachable inside the gossip group."""

    peer_id: str
    address: Optional[AddressHint] = None


@dataclass
class Connection:
    """Handle to one joined gossip group.

    Attributes:
        topic: Gossip group identifier
        remote_peer_id: Bootstrap peer for joiners, None for the host
        is_open: False once close() has run
    """

    topic: bytes
    remote_peer_id: Optional[str] = None
    is_open: bool = True


class Transport(ABC):
    """Narrow interface between the engine and the network substrate."""

    @abstractmethod
    async def create_endpoint(self, accept_peers: bool = True) -> Endpoint:
        """
        Create the local endpoint and report how peers can reach it.

        Joiners pass accept_peers=False: they only dial out, so nothing is
        bound and no address hints are reported.
        """

    @abstractmethod
    async def listen(self, topic: bytes) -> Connection:
        """Open a gossip group as its first member (host side)."""

    @abstractmethod
    async def connect(self, descriptor: ConnectionDescriptor) -> Connection:
        """
        Join the gossip group described by a decoded ticket.

        Raises:
            ConnectError: If no address in the descriptor leads to the host
        """

    @abstractmethod
    async def send(self, connection: Connection, data: bytes) -> None:
        """
        Broadcast one frame to the group.

        Raises:
            ConnectError: If the frame could not be handed to any peer
        """

    @abstractmethod
    def receive(self) -> AsyncIterator[Tuple[str, bytes]]:
        """
        Stream of (delivering peer id, frame bytes).

        Ends when the transport is closed; raises ConnectError if the group
        becomes unreachable.
        """

    @abstractmethod
    def discover_peers(self) -> AsyncIterator[PeerAddress]:
        """Stream of peers that became reachable. Ends when the transport is closed."""

    @abstractmethod
    async def close(self, connection: Optional[Connection] = None) -> None:
        """Leave the group, if one was joined, and release every network resource."""
