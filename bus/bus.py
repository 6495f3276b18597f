# bus/bus.py
import itertools
import logging
import os
import queue
import random
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from bus.messages import FRAME, Envelope, Heartbeat, Message, decode, encode
from bus.transport import Transport, open_transport

logger = logging.getLogger(__name__)

Handler = Callable[[Message], None]

COMMANDS = "commands"
STATUSES = "statuses"


class CommandBus:
    """Publish/subscribe over a Transport.

    Local subscribers get every message published in this process plus every
    frame arriving from the transport, on one dispatcher thread, in arrival
    order. Frames from a remote producer that arrive out of sequence are
    dropped, which keeps delivery FIFO per producer and at most once.
    """
    def __init__(self, transport: Transport, heartbeat_interval_s: float = 0.0,
                 sender_id: Optional[int] = None):
        self.transport = transport
        self.sender_id = sender_id if sender_id is not None else \
            (os.getpid() << 12 ^ random.getrandbits(32)) & 0xFFFFFFFF
        self.heartbeat_interval_s = heartbeat_interval_s
        self._seq = itertools.count(1)
        self._send_lock = threading.Lock()
        self._subs: List[Tuple[Handler, Optional[str]]] = []
        self._subs_lock = threading.Lock()
        self._last_seq: Dict[int, int] = {}
        self._rx_lock = threading.Lock()
        self._queue: "queue.Queue[Optional[Envelope]]" = queue.Queue()
        self._closed = threading.Event()
        self._threads: List[threading.Thread] = []
        self.dropped = 0

    @property
    def cross_process(self) -> bool:
        return self.transport.cross_process

    def start(self) -> "CommandBus":
        self.transport.set_receiver(self._on_frame)
        t = threading.Thread(target=self._dispatch_loop, name="bus-dispatch", daemon=True)
        t.start()
        self._threads.append(t)
        if self.heartbeat_interval_s > 0:
            hb = threading.Thread(target=self._heartbeat_loop, name="bus-heartbeat", daemon=True)
            hb.start()
            self._threads.append(hb)
        return self

    def close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(None)
        self.transport.close()
        for t in self._threads:
            if t is not threading.current_thread():
                t.join(1.0)

    # ---------- publish / subscribe ----------
    def subscribe(self, handler: Handler, kind: Optional[str] = None) -> Callable[[], None]:
        """kind: COMMANDS, STATUSES or None for everything. Returns an unsubscribe function."""
        entry = (handler, kind)
        with self._subs_lock:
            self._subs.append(entry)

        def unsubscribe():
            with self._subs_lock:
                if entry in self._subs:
                    self._subs.remove(entry)
        return unsubscribe

    def publish(self, msg: Message):
        if self._closed.is_set():
            return
        with self._send_lock:
            seq = next(self._seq)
            ts = int(time.time() * 1000)
            frame = encode(msg, self.sender_id, seq, ts)
            self._queue.put(Envelope(self.sender_id, seq, ts, msg))
            self.transport.send(frame)

    def flush(self, timeout: float = 1.0) -> bool:
        """Wait until everything queued so far has been handed to subscribers."""
        q = self._queue
        with q.all_tasks_done:
            return q.all_tasks_done.wait_for(lambda: not q.unfinished_tasks, timeout)

    # ---------- internals ----------
    def _on_frame(self, frame: bytes):
        try:
            env = decode(frame)
        except ValueError as e:
            logger.debug("Bad frame: %s", e)
            return
        if env.sender == self.sender_id:
            return
        with self._rx_lock:
            if env.seq <= self._last_seq.get(env.sender, 0):
                self.dropped += 1
                return
            self._last_seq[env.sender] = env.seq
            self._queue.put(env)

    def _dispatch_loop(self):
        while True:
            env = self._queue.get()
            try:
                if env is None:
                    return
                msg = env.message
                kind = COMMANDS if msg.is_command else STATUSES
                with self._subs_lock:
                    subs = [h for h, k in self._subs if k is None or k == kind]
                for h in subs:
                    try:
                        h(msg)
                    except Exception:
                        logger.exception("Bus handler failed on %s", type(msg).__name__)
            finally:
                self._queue.task_done()

    def _heartbeat_loop(self):
        while not self._closed.wait(self.heartbeat_interval_s):
            self.publish(Heartbeat(int(time.time() * 1000)))


def open_bus(cfg) -> CommandBus:
    transport = open_transport(cfg, FRAME.size)
    return CommandBus(transport, cfg.heartbeat_interval_s).start()
