"""
Inventory Alerts - stock monitor
================================
Polls product pages and tells a Telegram chat when an item goes in or out
of stock.

1. Async HTTP fetching with aiohttp, one shared session per run
2. Items in a cycle checked concurrently, bounded by a semaphore
3. Pluggable extractors per item (see extractors.py)
4. In-memory watch state; first observation of an item never notifies
5. One Telegram message per transition, failed sends are logged and dropped
6. SIGINT/SIGTERM let the running cycle finish before exiting
"""

import argparse
import asyncio
import html
import logging
import os
import random
import signal
import sys
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp
import yaml

from extractors import MatchExtractor, build_extractor
from models import (
    ConfigError,
    ExtractError,
    FetchError,
    NotifyError,
    TrackedItem,
    TransitionEvent,
    UNKNOWN,
    AvailabilityStatus,
    WatchRecord,
)


USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LENGTH = 4096
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "OFF": logging.CRITICAL + 1,
}

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2


def get_headers():
    """Return browser-like request headers"""
    return {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-GB,en;q=0.5",
        "Connection": "keep-alive"
    }


# --------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------

@dataclass
class MonitorConfig:
    chat_id: Union[int, str]
    bot_token: str = field(repr=False)
    poll_period_s: float = 60.0
    match_file: str = "matches.yml"
    log_level: str = "INFO"
    request_timeout_s: float = 10.0
    retries: int = 2
    max_concurrent_requests: int = 10
    boot_message: bool = True
    unknown_warn_after: int = 5
    api_base: str = TELEGRAM_API_BASE

    @property
    def fetch_timeout_s(self) -> float:
        # a single request must never outlive the poll period
        return min(self.request_timeout_s, self.poll_period_s / 2)


def parse_chat_id(value) -> Union[int, str]:
    """Numeric chat id (negative for groups) or a public @channelname"""
    text = str(value).strip()
    if text.startswith("@") and len(text) > 1 and text[1:].replace("_", "").isalnum():
        return text
    try:
        return int(text)
    except ValueError:
        raise ConfigError(f"Malformed chat id: {value!r}") from None


def load_config(args: argparse.Namespace, environ: Mapping[str, str]) -> MonitorConfig:
    """Build and validate the monitor configuration. Raises ConfigError."""
    token = environ.get("TELEGRAM_BOT_TOKEN") or environ.get("TELOXIDE_TOKEN")
    if not token:
        raise ConfigError("TELEGRAM_BOT_TOKEN is not set")

    raw_chat_id = args.chat_id if args.chat_id is not None else environ.get("TELEGRAM_CHAT_ID")
    if raw_chat_id is None or str(raw_chat_id).strip() == "":
        raise ConfigError("No chat id given (argument or TELEGRAM_CHAT_ID)")
    chat_id = parse_chat_id(raw_chat_id)

    if args.update_period_s <= 0:
        raise ConfigError(f"Update period must be positive, got {args.update_period_s}")
    if args.request_timeout_s <= 0:
        raise ConfigError(f"Request timeout must be positive, got {args.request_timeout_s}")

    log_level = str(args.log_level).upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"Unknown log level: {args.log_level}")

    return MonitorConfig(
        chat_id=chat_id,
        bot_token=token,
        poll_period_s=args.update_period_s,
        match_file=args.match_file,
        log_level=log_level,
        request_timeout_s=args.request_timeout_s,
        boot_message=not args.no_boot_message,
    )


def parse_tracked_item(entry, index: int) -> TrackedItem:
    """Turn one match file entry into a TrackedItem"""
    if not isinstance(entry, dict):
        raise ConfigError(f"Entry {index}: expected a mapping, got {type(entry).__name__}")

    url = entry.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ConfigError(f"Entry {index}: missing or invalid 'url'")

    name = entry.get("product") or entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Entry {index}: missing 'product'")

    if "extractor" in entry and "matches" in entry:
        raise ConfigError(f"Entry {index} ({name}): use either 'matches' or 'extractor', not both")
    if "extractor" in entry:
        options = entry["extractor"]
        if isinstance(options, str):
            options = {"type": options}
        if not isinstance(options, dict):
            raise ConfigError(f"Entry {index} ({name}): 'extractor' must be a type name or mapping")
        extractor = build_extractor(options)
    elif "matches" in entry:
        extractor = MatchExtractor.from_config(entry)
    else:
        raise ConfigError(f"Entry {index} ({name}): no 'matches' or 'extractor' given")

    return TrackedItem(
        item_id=str(entry.get("id") or url),
        name=name.strip(),
        url=url,
        extractor=extractor,
        vendor=str(entry.get("vendor") or ""),
    )


def load_tracked_items(path: str) -> List[TrackedItem]:
    """Load the watch list from a YAML match file. Raises ConfigError."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Match file not found: {path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read match file {path}: {e}") from e

    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Match file {path} must contain a non-empty list of items")

    items = []
    seen_ids = set()
    for index, entry in enumerate(raw, 1):
        try:
            item = parse_tracked_item(entry, index)
        except ConfigError as e:
            raise ConfigError(f"{path}: {e}") from e
        if item.item_id in seen_ids:
            raise ConfigError(f"{path}: duplicate item id {item.item_id}")
        seen_ids.add(item.item_id)
        items.append(item)

    logging.info(f"Loaded {len(items)} tracked items from {path}")
    return items


# --------------------------------------------------------------------------
# Fetching
# --------------------------------------------------------------------------

async def fetch_page_async(session: aiohttp.ClientSession, url: str, timeout: float = 10.0, retries: int = 2) -> str:
    """Fetch a single page, retrying a couple of times. Raises FetchError."""
    last_error = "no attempt made"
    for attempt in range(retries):
        try:
            async with session.get(url, headers=get_headers(), timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                if 200 <= response.status < 300:
                    return await response.text(errors="replace")
                last_error = f"HTTP {response.status}"
                logging.warning(f"HTTP {response.status} for {url} (attempt {attempt+1})")
        except asyncio.TimeoutError:
            last_error = f"timeout after {timeout:.1f}s"
            logging.warning(f"Timeout fetching {url} (attempt {attempt+1})")
        except aiohttp.ClientError as e:
            last_error = str(e) or type(e).__name__
            logging.warning(f"Error fetching {url} (attempt {attempt+1}): {last_error}")

        if attempt < retries - 1:
            await asyncio.sleep(random.uniform(1, 2))

    raise FetchError(f"{url}: {last_error}")


# --------------------------------------------------------------------------
# Watch state and change detection
# --------------------------------------------------------------------------

class WatchState:
    """
    Last known availability per item, kept in memory for the life of the
    process. Anything with the same get/put methods can stand in for it.
    """
    def __init__(self):
        self.data: Dict[str, WatchRecord] = {}

    def get(self, item_id: str) -> Optional[WatchRecord]:
        return self.data.get(item_id)

    def put(self, item_id: str, record: WatchRecord):
        self.data[item_id] = record

    def __len__(self):
        return len(self.data)


def detect_change(item_id: str, previous: Optional[WatchRecord], observed: AvailabilityStatus,
                  now: datetime) -> Tuple[Optional[TransitionEvent], WatchRecord]:
    """
    Compare a fresh observation with the stored record.

    Returns the transition to report (if any) and the record to store.
    Unknown only bumps the timestamp and the failure counter; it never
    clears the last definite status and never counts as a change. The first
    definite observation of an item is recorded silently.
    """
    if not observed.is_definite:
        if previous is None:
            return None, WatchRecord(status=None, last_result=UNKNOWN, last_checked=now, consecutive_unknown=1)
        return None, replace(previous, last_result=UNKNOWN, last_checked=now,
                             consecutive_unknown=previous.consecutive_unknown + 1)

    record = WatchRecord(status=observed, last_result=observed, last_checked=now)
    if previous is None or previous.status is None or previous.status == observed:
        return None, record
    return TransitionEvent(item_id=item_id, previous=previous.status, new=observed, timestamp=now), record


# --------------------------------------------------------------------------
# Telegram
# --------------------------------------------------------------------------

def _item_link(item: TrackedItem) -> str:
    label = item.vendor or item.url
    return f'<a href="{html.escape(item.url, quote=True)}">{html.escape(label)}</a>'


def format_transition(item: TrackedItem, event: TransitionEvent) -> str:
    """Message text for one transition, Telegram HTML"""
    icon = "✅" if event.new is AvailabilityStatus.IN_STOCK else "❌"
    return (
        f"{icon} <b>State Changed</b>\n"
        f"<b>{html.escape(item.name)}</b>: {event.previous} → {event.new}\n"
        f"{_item_link(item)}"
    )


def format_boot(items: List[TrackedItem], poll_period_s: float) -> str:
    lines = [f"🚀 <b>Boot</b> - watching {len(items)} items every {poll_period_s:g}s"]
    for item in items:
        lines.append(f"{html.escape(item.name)} - {_item_link(item)}")
    text = "\n".join(lines)
    if len(text) > TELEGRAM_MAX_MESSAGE_LENGTH:
        text = "\n".join(lines[:1] + [f"{len(items)} items, list too long to show"])
    return text


class TelegramNotifier:
    """Sends messages to one chat through the Bot API sendMessage method"""

    def __init__(self, session: aiohttp.ClientSession, token: str, chat_id: Union[int, str],
                 api_base: str = TELEGRAM_API_BASE, timeout: float = 10.0):
        self.session = session
        self.token = token
        self.chat_id = chat_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _redact(self, text: str) -> str:
        return text.replace(self.token, "***") if self.token else text

    async def send_message(self, text: str):
        """Send raw HTML text. Raises NotifyError."""
        url = f"{self.api_base}/bot{self.token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            async with self.session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    data = {}

                if response.status == 429:
                    retry_after = (data.get("parameters") or {}).get("retry_after")
                    raise NotifyError(f"Rate limited by Telegram (retry after {retry_after}s)")
                if not 200 <= response.status < 300 or not data.get("ok"):
                    description = data.get("description", "no description")
                    raise NotifyError(f"Telegram API error {response.status}: {description}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotifyError(self._redact(f"Telegram request failed: {str(e) or type(e).__name__}")) from e

    async def send_transition(self, item: TrackedItem, event: TransitionEvent):
        await self.send_message(format_transition(item, event))
        logging.info(f"Notification sent: {item.name} ({event.previous} -> {event.new})")


# --------------------------------------------------------------------------
# Monitor loop
# --------------------------------------------------------------------------

class InventoryMonitor:
    """
    Drives the poll cycles. Only this class writes to the watch state, and
    only from inside the event loop, so no locking is needed.
    """
    def __init__(self, config: MonitorConfig, items: List[TrackedItem], session, notifier,
                 state: Optional[WatchState] = None, clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.items = items
        self.session = session
        self.notifier = notifier
        self.state = state if state is not None else WatchState()
        self.clock = clock
        self.cycle_count = 0
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self, sig=None):
        """Finish the current cycle, then exit the loop"""
        if not self._stop.is_set():
            logging.info(f"Shutdown requested ({signal.Signals(sig).name if sig else 'stop'})")
            print("\nShutting down gracefully...")
        self._stop.set()

    async def observe(self, item: TrackedItem) -> AvailabilityStatus:
        """Fetch and extract one item. Failures come back as Unknown."""
        try:
            content = await fetch_page_async(self.session, item.url, timeout=self.config.fetch_timeout_s,
                                             retries=self.config.retries)
        except FetchError as e:
            logging.warning(f"Fetch failed for {item.name}: {e}")
            return UNKNOWN

        try:
            return item.extractor.extract(content)
        except ExtractError as e:
            logging.warning(f"Could not read stock state for {item.name} ({item.url}): {e}")
            return UNKNOWN

    async def check_item(self, item: TrackedItem, semaphore: asyncio.Semaphore) -> str:
        """Run one item through fetch, extract, detect and notify"""
        async with semaphore:
            observed = await self.observe(item)

        event, record = detect_change(item.item_id, self.state.get(item.item_id), observed, self.clock())
        self.state.put(item.item_id, record)

        if not observed.is_definite:
            warn_after = self.config.unknown_warn_after
            if warn_after and record.consecutive_unknown % warn_after == 0:
                logging.warning(f"{item.name}: no usable result for {record.consecutive_unknown} checks in a row "
                                f"(last known: {record.status or 'never seen'})")
            return "unknown"

        if event is None:
            logging.debug(f"{item.name}: {observed} (no change)")
            return "unchanged"

        logging.info(f"STATE CHANGE: {item.name} ({event.previous} -> {event.new})")
        try:
            await self.notifier.send_transition(item, event)
        except NotifyError as e:
            logging.error(f"Notification failed for {item.name}, dropping it: {e}")
            return "notify_failed"
        return "transition"

    async def _check_item_isolated(self, item: TrackedItem, semaphore: asyncio.Semaphore) -> str:
        try:
            return await self.check_item(item, semaphore)
        except Exception:
            logging.exception(f"Unexpected error checking {item.name}")
            return "error"

    async def run_cycle(self) -> Dict:
        """Check every item once. Returns a summary of the cycle."""
        start_time = time.monotonic()
        semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)
        outcomes = await asyncio.gather(*(self._check_item_isolated(item, semaphore) for item in self.items))
        self.cycle_count += 1

        return {
            "cycle": self.cycle_count,
            "duration": time.monotonic() - start_time,
            "items": len(self.items),
            "transitions": outcomes.count("transition") + outcomes.count("notify_failed"),
            "notify_failed": outcomes.count("notify_failed"),
            "unknown": outcomes.count("unknown"),
            "errors": outcomes.count("error"),
        }

    async def send_boot_message(self):
        try:
            await self.notifier.send_message(format_boot(self.items, self.config.poll_period_s))
            logging.debug("Boot message sent")
        except NotifyError as e:
            logging.error(f"Failed to send boot message: {e}")

    async def run(self, max_cycles: Optional[int] = None) -> int:
        """
        Poll until stopped. A cycle that overruns the period is followed
        immediately by the next one; cycles never overlap.
        """
        logging.info(f"Starting inventory monitor: {len(self.items)} items, period {self.config.poll_period_s:g}s")
        if self.config.boot_message:
            await self.send_boot_message()

        cycles = 0
        while not self._stop.is_set():
            started = time.monotonic()
            print(f"CYCLE {self.cycle_count + 1} - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

            try:
                result = await self.run_cycle()
                logging.info(
                    f"Cycle {result['cycle']} complete in {result['duration']:.1f}s: "
                    f"{result['items']} items, {result['transitions']} changes, "
                    f"{result['unknown']} unknown, {result['errors']} errors"
                )
            except Exception as e:
                logging.exception(f"Cycle crashed: {e}")

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            remaining = self.config.poll_period_s - (time.monotonic() - started)
            if remaining <= 0:
                logging.warning(f"Cycle took longer than the {self.config.poll_period_s:g}s period, starting next one now")
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

        logging.info(f"Monitor stopped after {cycles} cycles")
        return cycles


# --------------------------------------------------------------------------
# Entry point
# --------------------------------------------------------------------------

def setup_logging(level_name: str = "INFO"):
    level = LOG_LEVELS.get(str(level_name).upper(), logging.INFO)
    log_file = os.environ.get("LOG_FILE")
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        logging.basicConfig(filename=log_file, level=level, format=LOG_FORMAT)
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    # aiohttp logs every connection hiccup at DEBUG
    logging.getLogger("aiohttp").setLevel(max(level, logging.INFO))


def parse_args(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> argparse.Namespace:
    environ = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(prog="inventory-monitor", description="Inventory Alerts")
    parser.add_argument("chat_id", nargs="?", default=None,
                        help="Telegram chat id to notify (default: $TELEGRAM_CHAT_ID)")
    parser.add_argument("-l", "--log-level", default=environ.get("LOG_LEVEL", "info"))
    parser.add_argument("-m", "--match-file", default="matches.yml")
    parser.add_argument("-u", "--update-period-s", type=float, default=environ.get("UPDATE_PERIOD_S", "60.0"))
    parser.add_argument("--request-timeout-s", type=float, default=10.0)
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--no-boot-message", action="store_true", help="do not announce startup in the chat")
    return parser.parse_args(argv)


def install_signal_handlers(monitor: InventoryMonitor) -> List[Tuple[int, object]]:
    """Route SIGINT/SIGTERM to monitor.stop. Returns what remove_signal_handlers needs."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.stop, sig)
            installed.append((sig, None))
        except NotImplementedError:
            # Windows event loops
            previous = signal.signal(sig, lambda s, frame: loop.call_soon_threadsafe(monitor.stop, s))
            installed.append((sig, previous or signal.SIG_DFL))
    return installed


def remove_signal_handlers(installed: List[Tuple[int, object]]):
    loop = asyncio.get_running_loop()
    for sig, previous in installed:
        if previous is None:
            loop.remove_signal_handler(sig)
        else:
            signal.signal(sig, previous)


async def main_async(config: MonitorConfig, items: List[TrackedItem], once: bool = False) -> int:
    connector = aiohttp.TCPConnector(
        limit=config.max_concurrent_requests * 2,
        ttl_dns_cache=300,
        keepalive_timeout=60
    )
    async with aiohttp.ClientSession(connector=connector) as session:
        notifier = TelegramNotifier(session, config.bot_token, config.chat_id, api_base=config.api_base,
                                    timeout=config.request_timeout_s)
        monitor = InventoryMonitor(config, items, session, notifier)
        installed = install_signal_handlers(monitor)
        try:
            await monitor.run(max_cycles=1 if once else None)
        finally:
            remove_signal_handlers(installed)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        config = load_config(args, os.environ)
        items = load_tracked_items(config.match_file)
    except ConfigError as e:
        logging.error(f"Refusing to start: {e}")
        return EXIT_CONFIG_ERROR

    logging.getLogger().setLevel(LOG_LEVELS[config.log_level])
    return asyncio.run(main_async(config, items, once=args.once))


if __name__ == "__main__":
    sys.exit(main())
