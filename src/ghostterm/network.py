"""
GhostTerm - Direct TCP gossip transport.

Created by orpheus497

This module implements the Transport interface with plain asyncio streams:
- The host listens on TCP and accepts joiners into its gossip group
- A joiner dials the address hints from the ticket, in order, until one answers
- Every link runs an authenticated, encrypted tunnel (see crypto)
- The host relays each frame it receives to every other joiner, so the
  group is a star with the host at its centre
- Every link has its own bounded outbound queue and writer task; a peer
  that stops reading is dropped instead of stalling the group

Record format on the socket: 4-byte big-endian length, then the record.
The first record each side sends is a hello:

    magic "GHST" | version (1) | static key (32) | ephemeral key (32) | topic (32)

After the hello exchange both sides derive tunnel keys. The responder then
sends a sealed ready marker, which proves it holds the static key named in
the ticket; the initiator answers with its own. All later records are sealed
protocol frames.
"""

import asyncio
import logging
import struct
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives.asymmetric import x25519

from . import crypto
from .constants import (
    CONNECTION_TIMEOUT,
    DEFAULT_BIND_HOST,
    DEFAULT_PORT,
    HANDSHAKE_TIMEOUT,
    LINK_QUEUE_SIZE,
    MAX_ADDRESS_HINTS,
    MAX_FRAME_SIZE,
    PEER_ID_SIZE,
    SEND_TIMEOUT,
    TOPIC_ID_SIZE,
)
from .errors import ConnectError, ErrorCode, ProtocolError
from .rate_limiter import RateLimiter
from .ticket import AddressHint, ConnectionDescriptor
from .transport import Connection, Endpoint, PeerAddress, Transport
from .utils import local_addresses, short_peer_id

logger = logging.getLogger(__name__)

TUNNEL_VERSION = 1
HELLO_MAGIC = b"GHST"
HELLO_FORMAT = f"!4sB{PEER_ID_SIZE}s{PEER_ID_SIZE}s{TOPIC_ID_SIZE}s"
HELLO_SIZE = struct.calcsize(HELLO_FORMAT)
READY_MARKER = b"ghostterm-ready"

RECORD_HEADER = struct.Struct("!I")
# Sealed frames carry a 16-byte authentication tag
MAX_RECORD_SIZE = MAX_FRAME_SIZE + 16

_CLOSED = object()


async def read_record(reader: asyncio.StreamReader) -> bytes:
    """
    Read one length-prefixed record.

    Raises:
        asyncio.IncompleteReadError: If the stream ends mid-record
        ProtocolError: If the declared length exceeds the record limit
    """
    header = await reader.readexactly(RECORD_HEADER.size)
    (length,) = RECORD_HEADER.unpack(header)
    if length > MAX_RECORD_SIZE:
        raise ProtocolError(
            ErrorCode.E302_MESSAGE_TOO_LARGE,
            f"Record too large: {length} bytes",
            {"length": length, "max_length": MAX_RECORD_SIZE},
        )
    return await reader.readexactly(length)


async def write_record(writer: asyncio.StreamWriter, record: bytes) -> None:
    writer.write(RECORD_HEADER.pack(len(record)) + record)
    await writer.drain()


def pack_hello(static_key: bytes, ephemeral_key: bytes, topic: bytes) -> bytes:
    return struct.pack(HELLO_FORMAT, HELLO_MAGIC, TUNNEL_VERSION, static_key, ephemeral_key, topic)


def unpack_hello(record: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Parse a hello record.

    Returns:
        Tuple of (static key, ephemeral key, topic)

    Raises:
        ConnectError: If the record is not a hello this version understands
    """
    if len(record) != HELLO_SIZE:
        raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Malformed hello")
    magic, version, static_key, ephemeral_key, topic = struct.unpack(HELLO_FORMAT, record)
    if magic != HELLO_MAGIC:
        raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Peer is not speaking GhostTerm")
    if version != TUNNEL_VERSION:
        raise ConnectError(
            ErrorCode.E209_HANDSHAKE_FAILED,
            f"Unsupported tunnel version: {version}",
            {"version": version},
        )
    return static_key, ephemeral_key, topic


class PeerLink:
    """
    One encrypted tunnel to a directly connected peer.

    Outbound frames wait in a bounded per-link queue drained by the link's
    own writer task, so a peer that stops reading only ever stalls itself.
    """

    def __init__(
        self,
        peer_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cipher: crypto.TunnelCipher,
        address: Optional[AddressHint] = None,
        queue_size: int = LINK_QUEUE_SIZE,
    ):
        self.peer_id = peer_id
        self.reader = reader
        self.writer = writer
        self.cipher = cipher
        self.address = address
        self.task: Optional[asyncio.Task] = None
        self.writer_task: Optional[asyncio.Task] = None
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def enqueue(self, frame: bytes) -> bool:
        """Queue a frame for the writer task. False if the queue is full."""
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def send(self, frame: bytes, timeout: float) -> None:
        # Only the writer task calls this, which keeps nonces in order
        await asyncio.wait_for(write_record(self.writer, self.cipher.seal(frame)), timeout=timeout)

    async def recv(self) -> bytes:
        return self.cipher.open(await read_record(self.reader))

    def close(self, abort: bool = False) -> None:
        """Close the socket; abort discards whatever a stalled peer never read."""
        try:
            if abort:
                self.writer.transport.abort()
            else:
                self.writer.close()
        except OSError as e:
            logger.debug(f"Error closing link to {short_peer_id(self.peer_id)}: {e}")

    def __repr__(self) -> str:
        return f"PeerLink(peer={short_peer_id(self.peer_id)}, address={self.address})"


class DirectTransport(Transport):
    """
    Gossip transport over direct TCP connections.

    The host side owns the listening socket and relays frames between
    joiners. A joiner keeps a single upstream link to the host; losing it
    is unrecoverable and surfaces as a ConnectError on the receive stream.
    A link that stops taking frames for send_timeout seconds, or lets
    link_queue_size frames pile up, is dropped without holding up the
    others.
    """

    def __init__(
        self,
        identity: Optional[crypto.IdentityKeyPair] = None,
        bind_host: str = DEFAULT_BIND_HOST,
        port: int = DEFAULT_PORT,
        connect_timeout: float = CONNECTION_TIMEOUT,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        send_timeout: float = SEND_TIMEOUT,
        link_queue_size: int = LINK_QUEUE_SIZE,
        advertise_hosts: Optional[Sequence[str]] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.identity = identity or crypto.IdentityKeyPair()
        self.bind_host = bind_host
        self.port = port
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.send_timeout = send_timeout
        self.link_queue_size = link_queue_size
        self.advertise_hosts = list(advertise_hosts) if advertise_hosts else None
        self.rate_limiter = rate_limiter

        self.server: Optional[asyncio.AbstractServer] = None
        self.topic: Optional[bytes] = None
        self.links: Dict[str, PeerLink] = {}
        self.upstream: Optional[str] = None

        self._inbound: asyncio.Queue = asyncio.Queue()
        self._discovered: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def local_peer_id(self) -> str:
        return self.identity.peer_id_hex

    # Endpoint and group membership

    async def create_endpoint(self, accept_peers: bool = True) -> Endpoint:
        if not accept_peers:
            return Endpoint(peer_id=self.identity.peer_id)
        if self.server is None:
            try:
                self.server = await asyncio.start_server(
                    self._handle_client, self.bind_host, self.port
                )
            except OSError as e:
                raise ConnectError(
                    ErrorCode.E201_CONNECTION_FAILED,
                    f"Cannot listen on {self.bind_host}:{self.port}: {e}",
                    {"reason": str(e)},
                ) from e
            self.port = self.server.sockets[0].getsockname()[1]
            logger.info(f"Listening on {self.bind_host}:{self.port}")

        return Endpoint(peer_id=self.identity.peer_id, address_hints=tuple(self._address_hints()))

    def _address_hints(self) -> List[AddressHint]:
        if self.advertise_hosts:
            hosts = self.advertise_hosts
        elif self.bind_host in ("", "0.0.0.0", "::"):
            hosts = local_addresses()
        else:
            hosts = [self.bind_host]
        return [AddressHint(host, self.port) for host in hosts[:MAX_ADDRESS_HINTS]]

    async def listen(self, topic: bytes) -> Connection:
        if self.server is None:
            await self.create_endpoint()
        self.topic = topic
        self.upstream = None
        logger.info(f"Opened gossip group {topic.hex()[:8]}")
        return Connection(topic=topic)

    async def connect(self, descriptor: ConnectionDescriptor) -> Connection:
        if not descriptor.address_hints:
            raise ConnectError(
                ErrorCode.E201_CONNECTION_FAILED,
                "Ticket only offers a relay, which the direct transport cannot use",
                {"relay": descriptor.relay_hint},
            )

        try:
            link = await asyncio.wait_for(self._dial_any(descriptor), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectError(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"Host did not answer within {self.connect_timeout}s",
            ) from e

        self.topic = descriptor.topic
        self.upstream = link.peer_id
        self._register(link)
        self._discovered.put_nowait(PeerAddress(link.peer_id, link.address))
        return Connection(topic=descriptor.topic, remote_peer_id=link.peer_id)

    async def _dial_any(self, descriptor: ConnectionDescriptor) -> PeerLink:
        last_error: Optional[Exception] = None
        for hint in descriptor.address_hints:
            try:
                return await self._dial(hint, descriptor)
            except (OSError, ConnectError, ProtocolError, asyncio.IncompleteReadError) as e:
                logger.info(f"Could not reach host at {hint}: {e}")
                last_error = e

        raise ConnectError(
            ErrorCode.E201_CONNECTION_FAILED,
            f"Could not reach host: {last_error}",
            {"reason": str(last_error), "tried": [str(h) for h in descriptor.address_hints]},
        )

    async def _dial(self, hint: AddressHint, descriptor: ConnectionDescriptor) -> PeerLink:
        logger.debug(f"Dialing {hint}")
        reader, writer = await asyncio.open_connection(hint.host, hint.port)
        try:
            return await self._initiate(reader, writer, descriptor, hint)
        except BaseException:
            writer.close()
            raise

    async def _initiate(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        descriptor: ConnectionDescriptor,
        hint: AddressHint,
    ) -> PeerLink:
        ephemeral = x25519.X25519PrivateKey.generate()
        await write_record(
            writer,
            pack_hello(self.identity.peer_id, _raw_public(ephemeral), descriptor.topic),
        )

        record = await asyncio.wait_for(read_record(reader), timeout=self.handshake_timeout)
        static_key, ephemeral_key, topic = unpack_hello(record)
        if static_key != descriptor.peer_id:
            raise ConnectError(
                ErrorCode.E209_HANDSHAKE_FAILED,
                "Host identity does not match the ticket",
                {"expected": descriptor.peer_id_hex[:16], "received": static_key.hex()[:16]},
            )
        if topic != descriptor.topic:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Host is serving another group")

        cipher = self._tunnel_cipher(ephemeral, static_key, ephemeral_key, True, topic)

        ready = await asyncio.wait_for(read_record(reader), timeout=self.handshake_timeout)
        if cipher.open(ready) != READY_MARKER:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Unexpected ready marker")
        await write_record(writer, cipher.seal(READY_MARKER))

        logger.info(f"Tunnel established to host {short_peer_id(static_key.hex())} at {hint}")
        return PeerLink(static_key.hex(), reader, writer, cipher, hint, self.link_queue_size)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Accept a joiner into the group."""
        peername = writer.get_extra_info("peername")
        host = peername[0] if peername else "unknown"

        if self.rate_limiter and not self.rate_limiter.check_connection_rate(host):
            writer.close()
            return

        try:
            link = await asyncio.wait_for(
                self._respond(reader, writer, host, peername), timeout=self.handshake_timeout
            )
        except (
            asyncio.TimeoutError,
            asyncio.IncompleteReadError,
            ConnectError,
            ProtocolError,
            OSError,
        ) as e:
            logger.warning(f"Rejected connection from {host}: {e}")
            writer.close()
            return

        self._register(link)
        self._discovered.put_nowait(PeerAddress(link.peer_id, link.address))

    async def _respond(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        peername,
    ) -> PeerLink:
        record = await read_record(reader)
        static_key, ephemeral_key, topic = unpack_hello(record)

        if self.topic is None or self._closed:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "No gossip group is open here")
        if self.upstream is not None:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Joiners do not accept peers")
        if topic != self.topic:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Hello names an unknown group")
        if static_key == self.identity.peer_id:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Peer presented our own identity")

        ephemeral = x25519.X25519PrivateKey.generate()
        await write_record(
            writer, pack_hello(self.identity.peer_id, _raw_public(ephemeral), self.topic)
        )
        cipher = self._tunnel_cipher(ephemeral, static_key, ephemeral_key, False, topic)

        await write_record(writer, cipher.seal(READY_MARKER))
        if cipher.open(await read_record(reader)) != READY_MARKER:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, "Unexpected ready marker")

        address = AddressHint(host, peername[1]) if peername else None
        logger.info(f"Peer {short_peer_id(static_key.hex())} joined from {host}")
        return PeerLink(static_key.hex(), reader, writer, cipher, address, self.link_queue_size)

    def _tunnel_cipher(
        self,
        ephemeral: x25519.X25519PrivateKey,
        remote_static: bytes,
        remote_ephemeral: bytes,
        initiator: bool,
        topic: bytes,
    ) -> crypto.TunnelCipher:
        try:
            send_key, receive_key = crypto.derive_session_keys(
                self.identity.private_key,
                ephemeral,
                crypto.IdentityKeyPair.from_public_bytes(remote_static),
                crypto.IdentityKeyPair.from_public_bytes(remote_ephemeral),
                initiator,
                topic,
            )
        except ValueError as e:
            raise ConnectError(ErrorCode.E209_HANDSHAKE_FAILED, f"Key agreement failed: {e}") from e
        return crypto.TunnelCipher(send_key, receive_key)

    # Link management

    def _register(self, link: PeerLink) -> None:
        previous = self.links.pop(link.peer_id, None)
        if previous is not None:
            logger.info(f"Replacing existing link to {short_peer_id(link.peer_id)}")
            self._cancel_link_tasks(previous)
            previous.close()
        self.links[link.peer_id] = link
        link.task = asyncio.create_task(self._pump(link))
        link.writer_task = asyncio.create_task(self._flush(link))

    async def _pump(self, link: PeerLink) -> None:
        """Deliver frames from one link; the host also relays them to everyone else."""
        try:
            while True:
                frame = await link.recv()
                if self.upstream is not None:
                    self._inbound.put_nowait((link.peer_id, frame))
                    continue
                # Each joiner is limited on its own link before anything is relayed
                if self.rate_limiter and not self.rate_limiter.check_frame_rate(link.peer_id):
                    continue
                self._inbound.put_nowait((link.peer_id, frame))
                self._broadcast(frame, exclude=link.peer_id)
        except asyncio.IncompleteReadError:
            logger.info(f"Link to {short_peer_id(link.peer_id)} closed by peer")
        except (ConnectError, ProtocolError, OSError) as e:
            logger.warning(f"Link to {short_peer_id(link.peer_id)} failed: {e}")
        finally:
            self._drop(link)

    async def _flush(self, link: PeerLink) -> None:
        """Write queued frames to one link, in order."""
        stalled = False
        try:
            while True:
                frame = await link.outbox.get()
                await link.send(frame, self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Peer {short_peer_id(link.peer_id)} took no data for {self.send_timeout}s"
            )
            stalled = True
        except (ConnectionError, OSError) as e:
            logger.warning(f"Send to {short_peer_id(link.peer_id)} failed: {e}")
        finally:
            self._drop(link, abort=stalled)

    def _cancel_link_tasks(self, link: PeerLink) -> None:
        current = asyncio.current_task()
        for task in (link.task, link.writer_task):
            if task is not None and task is not current:
                task.cancel()

    def _drop(self, link: PeerLink, abort: bool = False) -> None:
        if self.links.get(link.peer_id) is link:
            del self.links[link.peer_id]
            if self.rate_limiter:
                self.rate_limiter.forget(link.peer_id)
        self._cancel_link_tasks(link)
        link.close(abort)
        if link.peer_id == self.upstream and not self._closed:
            self.upstream = None
            self._inbound.put_nowait(
                ConnectError(ErrorCode.E203_CONNECTION_CLOSED, "Lost connection to host")
            )

    def _broadcast(self, frame: bytes, exclude: Optional[str] = None) -> int:
        """Queue a frame on every link but ``exclude``; returns how many took it."""
        delivered = 0
        for link in list(self.links.values()):
            if link.peer_id == exclude:
                continue
            if link.enqueue(frame):
                delivered += 1
            else:
                logger.warning(
                    f"Dropping {short_peer_id(link.peer_id)}: {link.outbox.maxsize} frames backed up"
                )
                self._drop(link, abort=True)
        return delivered

    # Data path

    async def send(self, connection: Connection, data: bytes) -> None:
        if self._closed or not connection.is_open:
            raise ConnectError(ErrorCode.E203_CONNECTION_CLOSED, "Connection is closed")

        delivered = self._broadcast(data)
        if connection.remote_peer_id is not None and delivered == 0:
            raise ConnectError(ErrorCode.E204_SEND_FAILED, "Not connected to the host")

    async def receive(self) -> AsyncIterator[Tuple[str, bytes]]:
        while True:
            item = await self._inbound.get()
            if item is _CLOSED:
                return
            if isinstance(item, ConnectError):
                raise item
            yield item

    async def discover_peers(self) -> AsyncIterator[PeerAddress]:
        while True:
            item = await self._discovered.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self, connection: Optional[Connection] = None) -> None:
        if self._closed:
            return
        self._closed = True
        if connection is not None:
            connection.is_open = False

        tasks = []
        for link in list(self.links.values()):
            for task in (link.task, link.writer_task):
                if task is not None:
                    task.cancel()
                    tasks.append(task)
            link.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.links.clear()

        if self.server is not None:
            self.server.close()
            try:
                await asyncio.wait_for(self.server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Listener did not close in time")
            self.server = None

        self.topic = None
        self.upstream = None
        self._inbound.put_nowait(_CLOSED)
        self._discovered.put_nowait(_CLOSED)
        logger.info("Transport closed")


def _raw_public(private_key: x25519.X25519PrivateKey) -> bytes:
    return crypto.IdentityKeyPair(private_key).get_public_key_bytes()
