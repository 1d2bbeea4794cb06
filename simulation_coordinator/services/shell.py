"""
Remote Shell Bridge

Relays an interactive shell between a websocket client and a pod exec
session with a TTY.

Client frames carry a one-byte tag:
- b"d" + raw bytes: keystrokes for the shell's stdin
- b"s" + JSON {"Width": int, "Height": int}: terminal resize

Shell output (stdout and stderr) goes back as binary websocket frames.
Whichever side finishes first (shell exit or client disconnect) ends the
other.
"""

import asyncio
import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from .kubernetes.client import KubernetesClient

logger = logging.getLogger(__name__)

FRAME_DATA = b"d"
FRAME_RESIZE = b"s"

# Kubernetes exec websocket channel carrying terminal resize events
RESIZE_CHANNEL = 4

DEFAULT_COMMAND = ("bash",)


class ShellProtocolError(Exception):
    """A client frame couldn't be decoded."""


@dataclass
class TerminalSize:
    width: int
    height: int

    def to_json(self) -> str:
        return json.dumps({"Width": self.width, "Height": self.height})


def decode_client_frame(frame: bytes) -> Tuple[bytes, Union[bytes, TerminalSize]]:
    """
    Split a client frame into its tag and payload.

    Returns:
        (FRAME_DATA, stdin bytes) or (FRAME_RESIZE, TerminalSize)

    Raises:
        ShellProtocolError: on empty frames, unknown tags or bad resize payloads
    """
    if not frame:
        raise ShellProtocolError("empty frame")
    tag, payload = frame[:1], frame[1:]
    if tag == FRAME_DATA:
        return tag, payload
    if tag == FRAME_RESIZE:
        try:
            size = json.loads(payload)
            return tag, TerminalSize(width=int(size["Width"]), height=int(size["Height"]))
        except (ValueError, KeyError, TypeError) as e:
            raise ShellProtocolError(f"invalid resize payload: {e}") from e
    raise ShellProtocolError(f"unknown frame type {tag!r}")


class TerminalSizeQueue:
    """
    Unbounded queue of resize events.

    The client side pushes; the exec side pulls whenever it polls for a new
    size, from its worker thread.
    """

    def __init__(self):
        self._queue: "queue.Queue[TerminalSize]" = queue.Queue()

    def push(self, size: TerminalSize) -> None:
        self._queue.put(size)

    def next(self) -> Optional[TerminalSize]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None


class RemoteShellBridge:
    def __init__(self, k8s: KubernetesClient, poll_interval: float = 0.1):
        self.k8s = k8s
        self.poll_interval = poll_interval

    async def run(self, websocket, namespace: str, pod_name: str,
                  command: Sequence[str] = DEFAULT_COMMAND) -> None:
        """
        Bridge an accepted websocket to a new exec session in the pod.

        Returns when either side ends. Errors from the side that ended first
        are re-raised after both sides stopped.
        """
        exec_stream = await asyncio.to_thread(self.k8s.open_exec_stream, pod_name, namespace, list(command))
        logger.info(f"[SHELL] Opened shell in {namespace}/{pod_name}")

        sizes = TerminalSizeQueue()
        stop = threading.Event()
        loop = asyncio.get_running_loop()

        client_task = asyncio.create_task(self._pump_client(websocket, exec_stream, sizes))
        exec_task = asyncio.create_task(
            asyncio.to_thread(self._pump_exec, exec_stream, sizes, stop, websocket, loop)
        )

        try:
            done, pending = await asyncio.wait({client_task, exec_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.set()
            for task in (client_task, exec_task):
                if not task.done():
                    task.cancel()
            await asyncio.to_thread(exec_stream.close)
            await asyncio.gather(client_task, exec_task, return_exceptions=True)
            logger.info(f"[SHELL] Closed shell in {namespace}/{pod_name}")

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _pump_client(self, websocket, exec_stream, sizes: TerminalSizeQueue) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("[SHELL] Client disconnected")
                return
            frame = message.get("bytes")
            if frame is None:
                frame = (message.get("text") or "").encode()
            tag, payload = decode_client_frame(frame)
            if tag == FRAME_DATA:
                await asyncio.to_thread(exec_stream.write_stdin, payload)
            else:
                sizes.push(payload)

    def _pump_exec(self, exec_stream, sizes: TerminalSizeQueue, stop: threading.Event,
                   websocket, loop: asyncio.AbstractEventLoop) -> None:
        """Runs on a worker thread until the shell exits or stop is set."""
        while not stop.is_set() and exec_stream.is_open():
            size = sizes.next()
            while size is not None:
                exec_stream.write_channel(RESIZE_CHANNEL, size.to_json())
                size = sizes.next()

            exec_stream.update(timeout=self.poll_interval)
            chunks: List[str] = []
            if exec_stream.peek_stdout():
                chunks.append(exec_stream.read_stdout())
            if exec_stream.peek_stderr():
                chunks.append(exec_stream.read_stderr())
            output = "".join(chunks)
            if output and not stop.is_set():
                asyncio.run_coroutine_threadsafe(websocket.send_bytes(output.encode()), loop).result()
        logger.info("[SHELL] Exec stream ended")
