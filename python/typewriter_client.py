import argparse
import asyncio
import codecs
import contextlib
import logging
import signal
import sys
from collections import deque
from typing import AsyncIterator, Callable, Deque, Optional, TextIO

import httpx

from chunk_text import normalize
from conversation_store import Conversation, ConversationStore
from page_scraper import PageAccessError, fetch_page, handle_message, truncate_content
from relay import StreamState
from settings import LOG_FORMAT, LOG_LEVEL, REDIS_URL, RELAY_URL, REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

# Typing animation tuning
TYPING_BATCH = 4  # characters per tick
TYPING_INTERVAL_MS = 15
DRAIN_POLL_MS = 50

CANCEL_MARKER = "\n[Cancelled]\n"
EMPTY_PROMPT_NOTICE = "Please enter a question."
SUMMARY_PROMPT = "Summarize this article in 3-4 sentences:\n\n{content}"


class RelayError(Exception):
    """The relay answered with a non-2xx status."""


class SessionBusy(Exception):
    """A prompt was issued while another one is still streaming."""


class ResponseView:
    """
    The visible answer. Keeps the full text and, when given a stream,
    mirrors every change to it (flushing is our "scroll into view").
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream
        self.text = ""

    def _write(self, text: str) -> None:
        if self.stream is not None:
            self.stream.write(text)
            self.stream.flush()

    def append(self, text: str) -> None:
        self.text += text
        self._write(text)

    def set(self, text: str) -> None:
        self.text = text
        self._write(text)

    def clear(self) -> None:
        if self.text:
            self._write("\n")
        self.text = ""


class RenderQueue:
    """Characters waiting to be shown, strictly FIFO."""

    def __init__(self):
        self._chars: Deque[str] = deque()

    def __len__(self):
        return len(self._chars)

    def enqueue(self, text: str) -> None:
        self._chars.extend(text)

    def take(self, n: int) -> str:
        out = []
        while self._chars and len(out) < n:
            out.append(self._chars.popleft())
        return "".join(out)

    def clear(self) -> None:
        self._chars.clear()


class RenderPump:
    """Moves a fixed batch of queued characters to the view on every tick."""

    def __init__(self, queue: RenderQueue, view: ResponseView,
                 batch: int = TYPING_BATCH, interval: float = TYPING_INTERVAL_MS / 1000):
        self.queue = queue
        self.view = view
        self.batch = batch
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.ensure_future(self._run())

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None

    def tick(self) -> None:
        if not self.queue:
            return
        self.view.append(self.queue.take(self.batch))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    async def wait_drained(self, poll: float = DRAIN_POLL_MS / 1000) -> None:
        if self.queue:
            self.start()
        while self.queue:
            await asyncio.sleep(poll)


async def iter_text_chunks(byte_chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """
    Decode a byte stream chunk by chunk. The decoder keeps partial UTF-8
    sequences between reads so characters split across reads survive.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for raw in byte_chunks:
        if not raw:
            continue
        text = normalize(decoder.decode(raw))
        if text:
            yield text
    tail = normalize(decoder.decode(b"", final=True))
    if tail:
        yield tail


class StreamConsumer:
    def __init__(self, queue: RenderQueue, pump: RenderPump):
        self.queue = queue
        self.pump = pump

    async def consume(self, byte_chunks: AsyncIterator[bytes]) -> str:
        """Feed the render queue from the stream; returns everything enqueued."""
        received = []
        async for text in iter_text_chunks(byte_chunks):
            self.queue.enqueue(text)
            self.pump.start()
            received.append(text)
        return "".join(received)


def _print_notice(message: str) -> None:
    print(f"\n! {message}", file=sys.stderr)


class ChatSession:
    """
    Everything one open assistant window owns for a single page: the
    conversation, the render queue and pump, the view, and the request
    currently in flight (at most one).
    """

    def __init__(self, page_url: str, client: httpx.AsyncClient,
                 store: Optional[ConversationStore] = None,
                 view: Optional[ResponseView] = None,
                 relay_url: str = RELAY_URL,
                 notify: Callable[[str], None] = _print_notice,
                 typing_batch: int = TYPING_BATCH,
                 typing_interval: float = TYPING_INTERVAL_MS / 1000,
                 drain_poll: float = DRAIN_POLL_MS / 1000):
        self.page_url = page_url
        self.client = client
        self.store = store if store is not None else ConversationStore()
        self.view = view if view is not None else ResponseView()
        self.relay_url = relay_url
        self.notify = notify
        self.drain_poll = drain_poll

        self.conversation = Conversation()
        self.queue = RenderQueue()
        self.pump = RenderPump(self.queue, self.view, batch=typing_batch, interval=typing_interval)
        self.consumer = StreamConsumer(self.queue, self.pump)
        self.state = StreamState.IDLE

        self._inflight: Optional[asyncio.Future] = None
        self._abort_reason: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._inflight is not None

    def load(self) -> Conversation:
        self.conversation = self.store.load(self.page_url)
        last = self.conversation.last_model_turn()
        if last is not None:
            self.view.set(last.text)
        return self.conversation

    def _reset_render(self) -> None:
        self.pump.stop()
        self.queue.clear()

    def reset_output(self) -> None:
        self._reset_render()
        self.view.clear()

    async def _fetch(self, prompt: str, history: list) -> str:
        payload = {"prompt": prompt, "conversationHistory": history}
        async with self.client.stream("POST", self.relay_url, json=payload) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise RelayError(f"Server error {response.status_code}: {body}")
            full_response = await self.consumer.consume(response.aiter_bytes())
        # not done until everything received is on screen
        await self.pump.wait_drained(self.drain_poll)
        return full_response

    async def send_prompt(self, prompt: Optional[str] = None) -> StreamState:
        if self.busy:
            raise SessionBusy("a request is already in flight")

        prompt = (prompt or "").strip()
        self.reset_output()
        if not prompt:
            self.view.set(EMPTY_PROMPT_NOTICE)
            return self.state

        self.conversation.add_user(prompt)
        self.store.save(self.page_url, self.conversation)
        history = self.conversation.prior_history()
        logger.debug("Sending prompt with %d prior turns", len(history))

        self.state = StreamState.STREAMING
        self._abort_reason = None
        self._inflight = asyncio.ensure_future(self._fetch(prompt, history))
        try:
            full_response = await self._inflight
        except asyncio.CancelledError:
            if self._abort_reason is None:
                raise
            self._reset_render()
            if self._abort_reason == "cancel":
                self.view.append(CANCEL_MARKER)
                self.state = StreamState.CANCELLED
            return self.state
        except (httpx.HTTPError, RelayError) as e:
            logger.warning("Fetch/Stream error: %s", e)
            self._reset_render()
            self.view.set(f"Error: {e}")
            self.state = StreamState.FAILED
            return self.state
        finally:
            self._inflight = None
            self.pump.stop()

        if self._abort_reason == "clear":
            return self.state

        full_response = full_response.strip()
        if full_response:
            self.conversation.add_model(full_response)
            self.store.save(self.page_url, self.conversation)
        self.state = StreamState.COMPLETED
        return self.state

    def _abort(self, reason: str) -> bool:
        if self._inflight is None:
            return False
        self._abort_reason = reason
        if not self._inflight.done():
            self._inflight.cancel()
        return True

    def cancel(self) -> bool:
        """Stop the in-flight request, if any."""
        return self._abort("cancel")

    async def summarize_page(self) -> StreamState:
        if self.busy:
            raise SessionBusy("a request is already in flight")
        try:
            html = await asyncio.to_thread(fetch_page, self.page_url)
        except PageAccessError as e:
            self.notify(str(e))
            return self.state

        response = handle_message({"action": "summarizePage"}, html)
        if not response or not response.get("content"):
            self.notify("Could not extract content from the page or the page returned empty content.")
            return self.state

        prompt = SUMMARY_PROMPT.format(content=truncate_content(response["content"]))
        return await self.send_prompt(prompt)

    def clear(self) -> None:
        self._abort("clear")
        self.reset_output()
        self.conversation.clear()
        self.store.delete(self.page_url)
        self.state = StreamState.IDLE
        logger.debug("Conversation cleared for %s", self.page_url)

    def page_unloaded(self) -> None:
        self.clear()


def _print_history(conversation: Conversation) -> None:
    print(f"Total messages: {len(conversation)}", file=sys.stderr)
    for index, turn in enumerate(conversation.turns, 1):
        preview = turn.text[:100] + ("..." if len(turn.text) > 100 else "")
        print(f"[{index}] {turn.role.upper()}: {preview}", file=sys.stderr)


async def run_cli(page_url: str, relay_url: str, forget: bool = False) -> None:
    store = ConversationStore.from_url(REDIS_URL)
    timeout = httpx.Timeout(REQUEST_TIMEOUT, connect=5.0)
    async with httpx.AsyncClient(timeout=timeout) as client:
        session = ChatSession(page_url, client, store=store,
                              view=ResponseView(sys.stdout), relay_url=relay_url)
        session.load()

        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, session.cancel)

        try:
            while True:
                line = await asyncio.to_thread(sys.stdin.readline)
                if not line:
                    break
                command = line.strip()
                if command in ("/quit", "/exit"):
                    break
                if command == "/summarize":
                    state = await session.summarize_page()
                elif command == "/clear":
                    session.clear()
                    state = session.state
                elif command == "/history":
                    _print_history(session.conversation)
                    continue
                else:
                    state = await session.send_prompt(command)
                sys.stdout.write("\n")
                print(f"[{state.value}]", file=sys.stderr)
        finally:
            if forget:
                session.page_unloaded()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Ask questions about a web page through the local relay.")
    parser.add_argument("--page", required=True, help="address of the page the conversation belongs to")
    parser.add_argument("--relay", default=RELAY_URL, help="relay endpoint")
    parser.add_argument("--forget", action="store_true",
                        help="drop this page's conversation on exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, stream=sys.stderr)
    asyncio.run(run_cli(args.page, args.relay, forget=args.forget))


if __name__ == "__main__":
    main()
