from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from sandcastle.config import Settings
from sandcastle.doctor import print_report, run_doctor
from sandcastle.models import AGENT_TYPES
from sandcastle.sandbox.image import ImageResolver
from sandcastle.sandbox.provider import (
    LocalSandboxProvider,
    connection_factory,
    prebuild_agent_images,
)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sandcastle", description="Local sandbox execution engine."
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SANDCASTLE_LOG_LEVEL", "WARNING"),
        help="Logging level (default: $SANDCASTLE_LOG_LEVEL or WARNING).",
    )
    parser.add_argument(
        "--runtime", choices=["docker", "podman"], help="Container engine override."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve the image for an agent type.")
    resolve.add_argument("agent", choices=AGENT_TYPES)

    prebuild = sub.add_parser("prebuild", help="Pull or build agent images ahead of time.")
    prebuild.add_argument(
        "agents", nargs="*", default=[], help=f"Agent types (default: all of {', '.join(AGENT_TYPES)})."
    )

    exec_ = sub.add_parser("exec", help="Run one command in a throwaway sandbox.")
    exec_.add_argument("--agent", choices=AGENT_TYPES, help="Agent image to use.")
    exec_.add_argument("--workdir", help="Working directory inside the sandbox.")
    exec_.add_argument(
        "--env", action="append", default=[], metavar="KEY=VALUE",
        help="Environment variable for the sandbox (repeatable).",
    )
    exec_.add_argument("cmd", nargs=argparse.REMAINDER, help="Command after `--`.")

    doctor = sub.add_parser("doctor", help="Check the local environment.")
    doctor.add_argument("--verbose", "-v", action="store_true", help="Show detailed output")
    doctor.add_argument("--json", action="store_true", help="Output as JSON")

    return parser.parse_args(argv)


def _parse_env(pairs: List[str]) -> dict:
    envs = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--env expects KEY=VALUE, got {pair!r}")
        envs[key] = value
    return envs


async def _resolve(settings: Settings, agent: str) -> int:
    connection = await connection_factory(settings)("cli-resolve")
    try:
        resolved = await ImageResolver(connection, settings).resolve_detailed(agent)
    finally:
        await connection.close()
    print(json.dumps({"agent_type": agent, "image": resolved.reference, "source": resolved.source}))
    return 0


async def _prebuild(settings: Settings, agents: List[str]) -> int:
    unknown = [a for a in agents if a not in AGENT_TYPES]
    if unknown:
        raise ValueError(f"Unknown agent type(s): {', '.join(unknown)}")
    report = await prebuild_agent_images(agents or None, settings=settings)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.success else 1


async def _exec(settings: Settings, args: argparse.Namespace) -> int:
    command_parts = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
    if not command_parts:
        raise ValueError("exec requires a command after `--`.")
    command = " ".join(command_parts)

    provider = LocalSandboxProvider(settings)
    try:
        sandbox = await provider.create(
            envs=_parse_env(args.env), agent_type=args.agent, workdir=args.workdir
        )
        async with sandbox:
            result = await sandbox.commands.run(command)
    finally:
        await provider.close()

    if result.stdout:
        sys.stdout.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr if result.stderr.endswith("\n") else result.stderr + "\n")
    return result.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "doctor":
            report = run_doctor()
            if args.json:
                print(json.dumps(report.to_dict(), indent=2))
            else:
                print_report(report, verbose=args.verbose)
            return 0 if report.passed else 1

        settings = Settings.load(runtime=args.runtime)
        if args.command == "resolve":
            return asyncio.run(_resolve(settings, args.agent))
        if args.command == "prebuild":
            return asyncio.run(_prebuild(settings, args.agents))
        return asyncio.run(_exec(settings, args))
    except Exception as exc:  # noqa: BLE001
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
