#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from db.session import SessionLocal
from generation.service import get_diagnostics


def main() -> None:
    parser = ArgumentParser(description="Show generation diagnostics for an SRT asset")
    parser.add_argument("--srt-asset-id", required=True)
    parser.add_argument("--variants", action="store_true", help="Print one line per variant")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        rows = get_diagnostics(session, args.srt_asset_id)
        if not rows:
            print("[diagnostics] none")
            return
        for row in rows:
            print(
                f"[diagnostics] task={row['task']} status={row['status']} provider={row['provider']} "
                f"quality={row['quality_score']} initial={row['quality_initial']} "
                f"publishability={row['publishability_score']} selected={row['selected_variant']} "
                f"fallback={row['used_heuristic_fallback']} guard={row['inflation_guard_applied']} "
                f"tokens={row['total_tokens']} cost_usd={row['estimated_cost_usd']}"
            )
            if not args.variants:
                continue
            for variant in row["variants"]:
                marker = "*" if variant.get("selected") else " "
                print(
                    f"[variant] {marker} task={row['task']} index={variant.get('index')} "
                    f"pass={variant.get('pass_index')} status={variant.get('status')} "
                    f"composite={variant.get('composite_score')} reason={variant.get('reason')}"
                )
    finally:
        session.close()


if __name__ == "__main__":
    main()
