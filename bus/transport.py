# bus/transport.py
import logging
import socket
import struct
import threading
import zlib
from typing import Callable, Dict, List, Optional

from errors import TransportUnavailable

logger = logging.getLogger(__name__)

Receiver = Callable[[bytes], None]


class Transport:
    """Moves opaque fixed-size frames between bus instances."""
    cross_process = False

    def __init__(self, channel: str):
        self.channel = channel
        self._receiver: Optional[Receiver] = None

    def set_receiver(self, fn: Receiver):
        self._receiver = fn

    def _deliver(self, frame: bytes):
        if self._receiver is not None:
            self._receiver(frame)

    def open(self):
        pass

    def send(self, frame: bytes):
        raise NotImplementedError

    def close(self):
        pass


class LocalTransport(Transport):
    """In-process only: frames reach the other LocalTransports on the same channel name."""
    _channels: Dict[str, List["LocalTransport"]] = {}
    _lock = threading.Lock()

    def open(self):
        with LocalTransport._lock:
            LocalTransport._channels.setdefault(self.channel, []).append(self)

    def send(self, frame: bytes):
        with LocalTransport._lock:
            peers = [t for t in LocalTransport._channels.get(self.channel, ()) if t is not self]
        for t in peers:
            t._deliver(frame)

    def close(self):
        with LocalTransport._lock:
            peers = LocalTransport._channels.get(self.channel, [])
            if self in peers:
                peers.remove(self)
            if not peers:
                LocalTransport._channels.pop(self.channel, None)


class MulticastTransport(Transport):
    """Host-local UDP multicast (TTL 0). Every process on the channel gets every frame,
    its own included; the bus drops its own echoes."""
    cross_process = True

    def __init__(self, channel: str, group: str, base_port: int, frame_size: int):
        super().__init__(channel)
        self.group = group
        self.port = base_port + zlib.crc32(channel.encode("utf-8")) % 1000
        self.frame_size = frame_size
        self._sock: Optional[socket.socket] = None
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def open(self):
        sock = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", self.port))
            mreq = struct.pack("4s4s", socket.inet_aton(self.group), socket.inet_aton("0.0.0.0"))
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 0)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
            sock.settimeout(0.25)
        except OSError as e:
            if sock is not None:
                sock.close()
            raise TransportUnavailable(f"multicast {self.group}:{self.port}: {e}") from e
        self._sock = sock
        self._thread = threading.Thread(target=self._recv_loop, name=f"bus-rx-{self.channel}", daemon=True)
        self._thread.start()
        logger.info("Bus channel '%s' on %s:%d", self.channel, self.group, self.port)

    def _recv_loop(self):
        while not self._closed.is_set():
            try:
                data, _ = self._sock.recvfrom(self.frame_size * 2)
            except socket.timeout:
                continue
            except OSError:
                if not self._closed.is_set():
                    logger.exception("Bus receive failed")
                return
            if len(data) != self.frame_size:
                logger.debug("Dropping %d-byte datagram", len(data))
                continue
            try:
                self._deliver(data)
            except Exception:
                logger.exception("Bus receiver failed")

    def send(self, frame: bytes):
        try:
            self._sock.sendto(frame, (self.group, self.port))
        except OSError as e:
            # at-most-once: a lost frame is not retried
            logger.warning("Bus send failed: %s", e)

    def close(self):
        self._closed.set()
        if self._sock is not None:
            self._sock.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(1.0)


def open_transport(cfg, frame_size: int) -> Transport:
    """Cross-process multicast when possible, else the in-process fallback."""
    if cfg.enabled:
        t = MulticastTransport(cfg.channel, cfg.group, cfg.base_port, frame_size)
        try:
            t.open()
            return t
        except TransportUnavailable as e:
            logger.warning("%s; bus is local to this process", e)
    local = LocalTransport(cfg.channel)
    local.open()
    return local
