"""Interactive console for a running dev server."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

if TYPE_CHECKING:  # pragma: no cover
    from .relay import DevServer

LOGGER = logging.getLogger("thingdev.console")


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, default=str)


@dataclass
class Command:
    """A console command; ``run`` receives the raw text after the name."""

    name: str
    description: str
    aliases: Sequence[str] = field(default_factory=tuple)

    def run(self, server: "DevServer", args: str) -> int:
        raise NotImplementedError("Command must implement run()")

    def format_help(self) -> str:
        return f"{self.name:<12} {self.description}"


class CommandRegistry:
    """Stores the known commands and resolves aliases."""

    def __init__(self) -> None:
        self._commands: Dict[str, Command] = {}
        self._ordered: List[Command] = []

    def register(self, command: Command) -> None:
        self._ordered.append(command)
        self._commands[command.name] = command
        for alias in command.aliases:
            self._commands[alias] = command

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def list_commands(self) -> Iterable[Command]:
        return self._ordered

    def names(self) -> List[str]:
        return sorted(self._commands)


class HelpCommand(Command):
    def __init__(self) -> None:
        super().__init__("help", "Show available commands", aliases=("?",))
        self._registry: Optional[CommandRegistry] = None

    def bind(self, registry: CommandRegistry) -> None:
        self._registry = registry

    def run(self, server: "DevServer", args: str) -> int:
        if not self._registry:
            return 1
        for command in self._registry.list_commands():
            print(command.format_help())
        return 0


class StatusCommand(Command):
    def __init__(self) -> None:
        super().__init__("status", "Show supervisor and relay status", aliases=("st",))

    def run(self, server: "DevServer", args: str) -> int:
        info = server.status()
        pid = info["pid"] if info["pid"] is not None else "-"
        print(
            f"app={info['app']} state={info['state']} pid={pid} "
            f"restarts={info['restarts']} crashes={info['crashes']}"
        )
        print(f"relay port={info['port']} peers={info['peers']}")
        return 0


class RestartCommand(Command):
    def __init__(self) -> None:
        super().__init__("restart", "Restart the application process", aliases=("r",))

    def run(self, server: "DevServer", args: str) -> int:
        server.supervisor.restart()
        print("restart requested")
        return 0


class DataCommand(Command):
    def __init__(self) -> None:
        super().__init__("data", "Print the application data map")

    def run(self, server: "DevServer", args: str) -> int:
        print(_dump(server.record.data))
        return 0


class SettingsCommand(Command):
    def __init__(self) -> None:
        super().__init__("settings", "Print the application settings")

    def run(self, server: "DevServer", args: str) -> int:
        print(_dump(server.record.settings))
        return 0


class SendCommand(Command):
    def __init__(self) -> None:
        super().__init__("send", "Send a JSON envelope to the application")

    def run(self, server: "DevServer", args: str) -> int:
        text = args.strip()
        if not text:
            print("usage: send <json>")
            return 1
        try:
            message = json.loads(text)
        except json.JSONDecodeError as exc:
            print(f"Invalid JSON: {exc}")
            return 1
        if not isinstance(message, dict):
            print("Envelope must be a JSON object")
            return 1
        server.supervisor.send_to_app(message)
        return 0


class ExitCommand(Command):
    def __init__(self) -> None:
        super().__init__("quit", "Stop the dev server and exit", aliases=("exit", "q"))

    def run(self, server: "DevServer", args: str) -> int:
        raise SystemExit(0)


def build_registry() -> CommandRegistry:
    registry = CommandRegistry()
    commands = [
        HelpCommand(),
        StatusCommand(),
        RestartCommand(),
        DataCommand(),
        SettingsCommand(),
        SendCommand(),
        ExitCommand(),
    ]
    for command in commands:
        registry.register(command)
        bind = getattr(command, "bind", None)
        if callable(bind):
            bind(registry)
    return registry


class DevConsole:
    """prompt_toolkit REPL driving a :class:`DevServer`."""

    prompt = "thingdev> "

    def __init__(self, server: "DevServer", registry: Optional[CommandRegistry] = None) -> None:
        self.server = server
        self.registry = registry or build_registry()

    def run(self) -> int:
        session: PromptSession = PromptSession(
            self.prompt,
            history=InMemoryHistory(),
            completer=WordCompleter(self.registry.names()),
        )
        while True:
            try:
                with patch_stdout():
                    line = session.prompt()
            except (EOFError, KeyboardInterrupt):
                print()
                return 0
            self.execute(line)

    def execute(self, line: str) -> int:
        stripped = line.strip()
        if not stripped:
            return 0
        name, _, args = stripped.partition(" ")
        command = self.registry.get(name)
        if not command:
            print(f"Unknown command: {name}")
            return 1
        try:
            return command.run(self.server, args)
        except SystemExit:
            raise
        except Exception as exc:
            LOGGER.exception("command failed")
            print(f"Command '{name}' failed: {exc}")
            return 1
