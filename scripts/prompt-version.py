#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
from pathlib import Path

from llm.routing import TASKS
from prompts.catalog import PromptCatalogError
from generation.service import activate_prompt_version, create_prompt_version, list_prompt_catalog


def main() -> None:
    parser = ArgumentParser(description="List, create or activate prompt versions")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Show every version per task")

    create = sub.add_parser("create", help="Create a new prompt version")
    create.add_argument("--task", required=True, choices=TASKS)
    create.add_argument("--name", required=True)
    create.add_argument("--system-file", required=True, type=Path)
    create.add_argument("--user-file", required=True, type=Path)
    create.add_argument("--activate", action="store_true")

    activate = sub.add_parser("activate", help="Make a version the active one")
    activate.add_argument("--task", required=True, choices=TASKS)
    activate.add_argument("--version", required=True, type=int)
    args = parser.parse_args()

    if args.command == "list":
        for task, entry in list_prompt_catalog().items():
            for version in entry["versions"]:
                marker = "*" if version["is_active"] else " "
                print(f"[prompt] {marker} task={task} version={version['version']} name={version['name']}")
        return

    try:
        if args.command == "create":
            created = create_prompt_version(
                args.task,
                args.name,
                args.system_file.read_text(encoding="utf-8"),
                args.user_file.read_text(encoding="utf-8"),
                args.activate,
            )
            print(f"[prompt] created task={created.task} version={created.version} active={created.is_active}")
        else:
            activated = activate_prompt_version(args.task, args.version)
            print(f"[prompt] activated task={activated.task} version={activated.version}")
    except PromptCatalogError as exc:
        raise SystemExit(f"[prompt] error={exc}") from exc


if __name__ == "__main__":
    main()
