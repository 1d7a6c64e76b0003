"""
Command-line interface.

Usage:
  hybridedit run --config hybridedit.yaml --prompt "change 'Welcome' to 'Hello'"
  hybridedit preview --config hybridedit.yaml --search "Welcome"
  hybridedit classify --config hybridedit.yaml --prompt "make the background blue" --no-oracle
"""

from __future__ import annotations

import argparse
import json
import logging

from .classifier import ScopeClassifier
from .config import HybridEditConfig
from .errors import MissingApiKeyError
from .llm import OpenRouterOracle
from .pipeline import TextReplaceEngine, run_from_config
from .report import format_summary
from .workspace import DirectoryWorkspace


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    parser = argparse.ArgumentParser(prog="hybridedit", description="Structural text modification for UI source files.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run_p = sub.add_parser("run", help="Apply a modification request to the project.")
    run_p.add_argument("--config", required=True, help="Path to YAML config file.")
    run_p.add_argument("--prompt", required=True, help="Natural-language modification request.")
    run_p.add_argument("--session", default="default", help="Session id for the change log.")
    run_p.add_argument("--dry-run", action="store_true", help="Compute diffs without writing files.")

    prev_p = sub.add_parser("preview", help="Show the files and text nodes a search term would touch.")
    prev_p.add_argument("--config", required=True, help="Path to YAML config file.")
    prev_p.add_argument("--search", required=True, help="Text to look for.")

    cls_p = sub.add_parser("classify", help="Classify a request without modifying anything.")
    cls_p.add_argument("--config", required=True, help="Path to YAML config file.")
    cls_p.add_argument("--prompt", required=True, help="Natural-language modification request.")
    cls_p.add_argument("--no-oracle", action="store_true", help="Use the heuristic scorer only.")

    args = parser.parse_args()
    cfg = HybridEditConfig.from_yaml(args.config)
    _setup_logging(cfg.runtime.verbose)

    try:
        _dispatch(args, cfg)
    except MissingApiKeyError as e:
        parser.exit(2, f"hybridedit: {e}\n")


def _dispatch(args: argparse.Namespace, cfg: HybridEditConfig) -> None:
    if args.cmd == "run":
        result = run_from_config(cfg, args.prompt, session_id=args.session, dry_run=args.dry_run)
        print(format_summary(result))
        if result.diffs:
            print("".join(result.diffs))
        raise SystemExit(0 if result.success else 1)

    if args.cmd == "preview":
        # preview never calls the oracle; no API key needed
        engine = TextReplaceEngine(oracle=None, cfg=cfg)
        preview = engine.preview(DirectoryWorkspace(cfg.project.root), args.search)
        print(json.dumps(preview.to_contract(), indent=2, ensure_ascii=False))
        raise SystemExit(0 if preview.success else 1)

    if args.cmd == "classify":
        oracle = None if args.no_oracle else OpenRouterOracle.from_config(cfg.llm)
        decision = ScopeClassifier(oracle).classify(args.prompt)
        print(f"Scope: {decision.scope.value} ({decision.source}, confidence {decision.confidence:.2f})")
        print(f"Reasoning: {decision.reasoning}")
        if decision.text_change:
            print(f"Search: {decision.text_change.search_term!r} -> {decision.text_change.replacement_term!r}")
            print(f"Variations: {decision.text_change.search_variations}")
        if decision.component_name:
            print(f"Component: {decision.component_name} ({decision.component_type})")
        for cc in decision.color_changes:
            print(f"Color: {cc.type} -> {cc.color}")


if __name__ == "__main__":
    main()
