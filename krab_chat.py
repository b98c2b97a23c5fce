import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from colorama import init, Fore, Style
from dotenv import load_dotenv

from backends import BackendError, BackendKind, ChatMessage, ConnectionStatus
from backends_factory import DESCRIPTORS, describe, missing_fields
from config_store import CONFIG_FIELDS, ConfigStore, settings_from_env
from dispatcher import Dispatcher, DispatcherListener
from message_log import MessageStore
from storage import FileStorage

STATUS_COLORS = {
    ConnectionStatus.DISCONNECTED: Fore.WHITE,
    ConnectionStatus.CONNECTING: Fore.YELLOW,
    ConnectionStatus.CONNECTED: Fore.GREEN,
    ConnectionStatus.ERROR: Fore.RED,
}

HELP = """Commands:
  /backends              list available backends
  /backend <kind>        switch backend (none, openclaw, openai, ollama, anthropic, custom)
  /set <field> <value>   set url, token or model for the current backend
  /connect               connect to the current backend
  /disconnect            disconnect
  /status                show backend and connection status
  /history               show the chat log
  /clear                 forget the chat log
  /quit                  exit
Anything else is sent to the backend as a chat message."""


@dataclass
class Config:
    state_dir: str = os.getenv("KRAB_STATE_DIR", "~/.krab")
    health_interval: float = float(os.getenv("KRAB_HEALTH_INTERVAL", "60"))
    context_messages: int = int(os.getenv("KRAB_CONTEXT", "10"))
    log_level: str = os.getenv("KRAB_LOG_LEVEL", "WARNING")


class ConsoleListener(DispatcherListener):
    def status_changed(self, status: ConnectionStatus, error: Optional[str]) -> None:
        line = f"{STATUS_COLORS[status]}[{status.value}]"
        print(f"{line} {error}" if error else line)

    def message_appended(self, message: ChatMessage) -> None:
        if not message.from_user:
            print(f"{Fore.CYAN}Krab: {message.content}")


def mask(value: str) -> str:
    if not value:
        return "<empty>"
    return value[:3] + "…" if len(value) > 6 else "***"


def print_status(d: Dispatcher) -> None:
    desc = describe(d.kind)
    print(f"{Fore.MAGENTA}Backend: {desc.display_name} ({d.kind.value})  Status: {d.status.value}")
    if d.kind is not BackendKind.NONE:
        cfg = d.config
        print(f"  url={cfg.url or '<empty>'}  token={mask(cfg.token)}  model={cfg.model or '<empty>'}")
        missing = missing_fields(d.kind, cfg)
        if missing:
            print(f"{Fore.YELLOW}  missing: {', '.join(missing)}")
    if d.last_error:
        print(f"{Fore.RED}  last error: {d.last_error}")


def print_backends(d: Dispatcher) -> None:
    for kind, desc in DESCRIPTORS.items():
        marker = "*" if kind is d.kind else " "
        hint = f"  (default url {desc.default_url})" if desc.default_url else ""
        print(f"{marker} {kind.value:<10} {desc.display_name:<18} {desc.description}{hint}")


async def handle_command(d: Dispatcher, line: str) -> bool:
    """Run one slash command; returns False when the user wants to quit."""
    cmd, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if cmd in ("quit", "exit", "q"):
        return False
    if cmd == "help":
        print(HELP)
    elif cmd == "backends":
        print_backends(d)
    elif cmd == "backend":
        try:
            kind = BackendKind(arg.lower())
        except ValueError:
            print(f"{Fore.RED}Unknown backend: {arg!r}")
            return True
        await d.select_backend(kind)
        print_status(d)
    elif cmd == "set":
        field, _, value = arg.partition(" ")
        if field not in CONFIG_FIELDS or d.kind is BackendKind.NONE:
            print(f"{Fore.RED}Usage: /set <{'|'.join(CONFIG_FIELDS)}> <value> (select a backend first)")
            return True
        d.update_config(d.kind, **{field: value.strip()})
        print_status(d)
    elif cmd == "connect":
        await d.connect()
    elif cmd == "disconnect":
        d.disconnect()
    elif cmd == "status":
        print_status(d)
    elif cmd == "history":
        for m in d.messages:
            who = "You" if m.from_user else "Krab"
            print(f"{Style.DIM}{m.timestamp:%H:%M:%S}{Style.RESET_ALL} {who}: {m.content}")
    elif cmd == "clear":
        d.clear_messages()
        print(f"{Fore.GREEN}Chat log cleared.")
    else:
        print(f"{Fore.YELLOW}Unknown command /{cmd}. Try /help.")
    return True


async def run(cfg: Config) -> None:
    storage = FileStorage(cfg.state_dir)
    config_store = ConfigStore(storage)

    # Environment (.env) values win over stored ones and are saved back
    loaded = config_store.load()
    if loaded.corrupted:
        print(f"{Fore.YELLOW}Stored settings were unreadable; starting from defaults.")
    config_store.save(settings_from_env(loaded.settings))

    d = Dispatcher(
        config_store,
        message_store=MessageStore(storage),
        listener=ConsoleListener(),
        context_limit=cfg.context_messages,
        health_interval=cfg.health_interval,
    )
    print(f"{Fore.CYAN}🦀 Krab chat. Type /help for commands.")
    print_status(d)
    await d.start()

    try:
        while True:
            try:
                line = (await asyncio.to_thread(input, "> ")).strip()
            except EOFError:
                break
            if not line:
                continue
            if line.startswith("/"):
                if not await handle_command(d, line):
                    break
                continue
            try:
                await d.send_message(line)
            except BackendError as e:
                print(f"{Fore.RED}{e}")
    finally:
        d.close()


def main() -> None:
    load_dotenv()
    init(autoreset=True)
    # Re-read after load_dotenv so .env values apply
    cfg = Config(
        state_dir=os.getenv("KRAB_STATE_DIR", "~/.krab"),
        health_interval=float(os.getenv("KRAB_HEALTH_INTERVAL", "60")),
        context_messages=int(os.getenv("KRAB_CONTEXT", "10")),
        log_level=os.getenv("KRAB_LOG_LEVEL", "WARNING"),
    )
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(cfg))
    except KeyboardInterrupt:
        print()


if __name__ == "__main__":
    main()
