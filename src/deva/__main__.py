"""Entry point for `python -m deva` / `deva`.

Usage:
    deva [AGENT] [deva flags] [-- agent args]
    deva ps | status [--all] | shell | stop | rm [--all] | clean
    deva --show-config

Flags deva doesn't know are passed through to the agent.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from pydantic import ValidationError

from deva import __version__
from deva.errors import ConfigError, DevaError

_COMMANDS = {
    "ps": "ps",
    "--ps": "ps",
    "status": "status",
    "shell": "shell",
    "--inspect": "shell",
    "stop": "stop",
    "rm": "rm",
    "remove": "rm",
    "clean": "clean",
    "prune": "clean",
    "help": "help",
}
# Options that consume the following token
_VALUE_OPTIONS = frozenset({"-v", "-e", "-c", "-p", "--config-home", "--profile"})


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deva",
        description="Run AI coding agents in per-workspace Docker containers",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-v", dest="volumes", action="append", default=[], metavar="SRC:DEST[:MODE]",
        help="Extra bind mount (repeatable)",
    )
    parser.add_argument(
        "-e", dest="env", action="append", default=[], metavar="NAME[=VALUE]",
        help="Extra environment variable; a bare NAME is taken from the host",
    )
    parser.add_argument(
        "-c", "--config-home", dest="config_home", metavar="DIR",
        help="Alternate auth home or config root",
    )
    parser.add_argument("-p", "--profile", help="Image profile (base, rust)")
    parser.add_argument(
        "--rm", dest="ephemeral", action="store_true",
        help="Ephemeral container, removed when the agent exits",
    )
    parser.add_argument(
        "-g", "--global", dest="global_mode", action="store_true",
        help="Management commands act on every deva container",
    )
    parser.add_argument(
        "-a", "--all", dest="show_all", action="store_true",
        help="status: every session; rm: every container of this workspace",
    )
    parser.add_argument("--host-net", action="store_true", help="Use host networking")
    parser.add_argument(
        "--no-docker", action="store_true", help="Do not mount the host Docker socket"
    )
    parser.add_argument(
        "--no-autolink", action="store_true", help="Do not link legacy agent homes"
    )
    parser.add_argument(
        "--no-config", action="store_true", help="Ignore deva config files"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the docker commands and exit"
    )
    parser.add_argument(
        "--debug", "--verbose", dest="debug", action="store_true", help="Debug logging"
    )
    parser.add_argument(
        "-y", "--yes", dest="assume_yes", action="store_true",
        help="Skip the high-risk workspace confirmation",
    )
    parser.add_argument(
        "--show-config", action="store_true", help="Show the resolved configuration"
    )
    parser.add_argument("--version", action="version", version=f"deva {__version__}")
    return parser


def split_argv(
    argv: list[str], agent_names: list[str]
) -> tuple[str | None, str | None, list[str], list[str]]:
    """Split argv into ``(agent, command, deva_args, passthrough)``.

    The first positional token that names an agent or a management command
    is taken out; everything after ``--`` belongs to the agent.
    """
    if "--" in argv:
        idx = argv.index("--")
        head, passthrough = argv[:idx], argv[idx + 1 :]
    else:
        head, passthrough = list(argv), []

    agent = command = None
    rest: list[str] = []
    skip_next = False
    for token in head:
        if skip_next:
            rest.append(token)
            skip_next = False
            continue
        if token in _VALUE_OPTIONS:
            rest.append(token)
            skip_next = True
            continue
        if agent is None and command is None:
            if token in agent_names:
                agent = token
                continue
            if token in _COMMANDS:
                command = _COMMANDS[token]
                continue
        if command in ("status", "rm") and token == "all":
            rest.append("--all")
            continue
        rest.append(token)
    return agent, command, rest, passthrough


def _settings_overrides(args: argparse.Namespace) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if args.profile:
        overrides["profile"] = args.profile
    if args.config_home:
        overrides["config_home"] = args.config_home
    for flag in ("host_net", "no_docker", "no_autolink"):
        if getattr(args, flag):
            overrides[flag] = True
    return overrides


def _run(argv: list[str]) -> int:
    from deva.agents import get_agents
    from deva.commands import (
        CommandContext,
        cmd_clean,
        cmd_ps,
        cmd_rm,
        cmd_shell,
        cmd_show_config,
        cmd_status,
        cmd_stop,
    )
    from deva.config import configure, reset_settings
    from deva.identity import validate_workspace
    from deva.launcher import LaunchOptions, Launcher
    from deva.logger import logger, set_level
    from deva.registry import SessionRegistry
    from deva.runtime import DockerEngine

    parser = _build_parser()
    agent, command, deva_args, passthrough = split_argv(argv, list(get_agents()))
    args, extras = parser.parse_known_args(deva_args)

    if args.debug:
        set_level("DEBUG")
    if args.no_config:
        reset_settings(use_config_files=False)
    if command == "help":
        parser.print_help()
        return 0

    try:
        settings = configure(**_settings_overrides(args))
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
    logger.debug("Configuration loaded", files=[str(p) for p in settings.loaded_config_files])

    engine = DockerEngine()
    agent_args = [*extras, *passthrough]

    if command is not None or args.show_config:
        ctx = CommandContext(
            settings=settings,
            engine=engine,
            registry=SessionRegistry(settings.session_dir),
            workspace=validate_workspace(os.getcwd()),
            global_mode=args.global_mode,
            loaded_files=settings.loaded_config_files,
        )
        if args.show_config:
            return cmd_show_config(
                ctx,
                agent=agent or settings.default_agent,
                config_home=settings.config_home,
                volumes=[*settings.volumes, *args.volumes],
                env=[*settings.env, *args.env],
            )
        match command:
            case "ps":
                return cmd_ps(ctx)
            case "status":
                return cmd_status(ctx, show_all=args.show_all)
            case "shell":
                return cmd_shell(ctx)
            case "stop":
                return cmd_stop(ctx)
            case "rm":
                return cmd_rm(ctx, remove_all=args.show_all)
            case "clean":
                return cmd_clean(ctx)

    launcher = Launcher(settings, engine, cwd=os.getcwd(), home=Path.home())
    return launcher.run(
        LaunchOptions(
            agent=agent,
            agent_args=agent_args,
            volumes=args.volumes,
            env=args.env,
            config_home=settings.config_home,
            ephemeral=args.ephemeral,
            dry_run=args.dry_run,
            assume_yes=args.assume_yes,
        )
    )


def main(argv: list[str] | None = None) -> None:
    try:
        code = _run(sys.argv[1:] if argv is None else argv)
    except DevaError as exc:
        print(f"error: {exc.diagnostic()}", file=sys.stderr)
        if exc.hint:
            print(f"hint: {exc.hint}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
