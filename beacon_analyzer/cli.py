#!/usr/bin/env python3
"""
Command-line interface for the beacon_analyzer package.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import orjson
from tqdm import tqdm

from .analyzer import BeaconAnalyzer
from .analyzers.threat_intel import CustomRuleSet, JsonRuleStore
from .config import Config
from .exceptions import InputError, RuleValidationError
from .history import HistoryStore
from .models import DetectionResult
from .samples import SAMPLES
from .utils.helpers import format_bytes, format_duration
from .utils.logging import setup_logger

DEFAULT_RULES_PATH = 'custom_rules.json'
DEFAULT_HISTORY_PATH = 'analysis_history.json'


def write_text_report(result: DetectionResult, path: Path, source: str) -> None:
    """Write a human-readable summary of one analysis."""
    f = result.features
    with open(path, 'w') as out:
        out.write('=== C2 Beacon Analysis ===\n')
        out.write(f"Source: {source}\n")
        out.write(f"Generated: {result.timestamp}\n")
        out.write(f"Score: {result.score}/100\n")
        out.write(f"Classification: {result.classification} ({result.severity})\n")
        out.write(f"\n{result.recommendation}\n")

        out.write('\n=== Features ===\n')
        out.write(f"Connections: {f.connection_count}\n")
        out.write(f"Duration: {format_duration(f.duration_minutes * 60)}\n")
        out.write(f"Mean interval: {f.mean_interval:.2f}s\n")
        out.write(f"Jitter: {f.jitter:.4f}\n")
        out.write(f"Periodicity: {f.periodicity:.3f}\n")
        out.write(f"Payload consistency: {f.payload_consistency:.3f}\n")
        out.write(f"Average payload: {format_bytes(f.avg_bytes)}\n")
        out.write(f"Total transferred: {format_bytes(f.total_bytes)}\n")
        out.write(f"Destinations: {f.unique_dest_ips} IPs, {f.unique_dest_ports} ports\n")

        out.write('\n=== Detection Factors ===\n')
        for reason in result.reasons:
            out.write(f"- {reason}\n")

        if result.threat_intel_matches:
            out.write('\n=== Threat Intelligence ===\n')
            for m in result.threat_intel_matches:
                out.write(f"{m.ip}: {m.malware} [{m.source}, {m.confidence}%]\n")

        out.write('\n=== Frameworks ===\n')
        for fw in result.identified_frameworks:
            out.write(f"{fw.name} ({fw.confidence}): {fw.reason}\n")

        if result.mitre_techniques:
            out.write('\n=== MITRE ATT&CK ===\n')
            for t in result.mitre_techniques:
                out.write(f"{t.id} {t.name}: {t.description}\n")

        for note in result.notes:
            out.write(f"\nNOTE: {note}\n")


def _run_dir(source: str, run_dir=None) -> Path:
    if not run_dir:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        run_dir = Path('reports') / f"{Path(source).stem}-{ts}"
    run_dir = Path(run_dir)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


async def analyze_files(paths, config: Config, offline=False, run_dir=None,
                        json_out='analysis.json', txt_out='analysis.txt'):
    """Analyze each JSON file and write its reports. Returns (path, run_dir, result)."""
    outputs = []
    async with BeaconAnalyzer.from_config(config, offline=offline) as analyzer:
        for path in tqdm(paths, desc='Analyzing', unit='file', disable=len(paths) < 2):
            result = await analyzer.analyze_document(Path(path).read_bytes(), Path(path).name)

            out_dir = _run_dir(path, run_dir if len(paths) == 1 else None)
            (out_dir / json_out).write_text(result.to_json())
            if txt_out:
                write_text_report(result, out_dir / txt_out, path)
            outputs.append((path, out_dir, result))
    return outputs


def _load_config(args) -> Config:
    config = Config(args.config)
    if getattr(args, 'rules', None):
        config.set(['rules', 'path'], args.rules)
    if getattr(args, 'history', None):
        config.set(['history', 'path'], args.history)
    return config


def cmd_analyze(args) -> int:
    config = _load_config(args)
    try:
        outputs = asyncio.run(analyze_files(
            args.files,
            config,
            offline=args.offline,
            run_dir=args.run_dir,
            json_out=args.json_out,
            txt_out=args.txt_out,
        ))
    except InputError as e:
        print(f"Error analyzing input: {e}")
        return 1
    except OSError as e:
        print(f"Error reading input: {e}")
        return 1

    for path, out_dir, result in outputs:
        print(f"{path}: {result.classification} ({result.score}/100). Reports saved to {out_dir}")
        for note in result.notes:
            print(f"  note: {note}")
    return 0


def cmd_rules(args) -> int:
    rules = CustomRuleSet(JsonRuleStore(args.rules or DEFAULT_RULES_PATH))

    if args.action == 'list':
        for rule in rules.all():
            print(f"{rule.id}  {rule.type:<4}  {rule.value:<18}  {rule.malware} ({rule.confidence}%)")
        print(f"{len(rules)} rule(s)")
    elif args.action == 'add':
        try:
            rule = rules.add(args.type, args.value, malware=args.malware,
                             confidence=args.confidence, tags=args.tag,
                             description=args.description)
        except RuleValidationError as e:
            print(f"Invalid rule: {e}")
            return 1
        print(f"Added rule {rule.id}")
    elif args.action == 'remove':
        if not rules.remove(args.rule_id):
            print(f"No rule with id {args.rule_id}")
            return 1
        print(f"Removed rule {args.rule_id}")
    elif args.action == 'export':
        print(rules.export_rules())
    elif args.action == 'import':
        try:
            count = rules.import_rules(Path(args.file).read_text())
        except (OSError, RuleValidationError) as e:
            print(f"Import failed: {e}")
            return 1
        print(f"Imported {count} rule(s)")
    return 0


def cmd_history(args) -> int:
    history = HistoryStore(args.history or DEFAULT_HISTORY_PATH)

    if args.action == 'list':
        for a in history.list(args.limit):
            print(f"{a.get('timestamp')}  {a.get('score'):>3}  {a.get('classification'):<10}  "
                  f"{a.get('file_name') or 'N/A'}")
    elif args.action == 'stats':
        print(orjson.dumps(history.stats(), option=orjson.OPT_INDENT_2).decode('utf-8'))
    elif args.action == 'export':
        print(history.export(args.format))
    elif args.action == 'clear':
        history.clear()
        print('History cleared')
    return 0


def cmd_sample(args) -> int:
    data = SAMPLES[args.name](seed=args.seed)
    text = orjson.dumps(data, option=orjson.OPT_INDENT_2).decode('utf-8')
    if args.output:
        Path(args.output).write_text(text)
        print(f"Wrote {len(data['connections'])} connections to {args.output}")
    else:
        print(text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="C2 beaconing detection for connection logs"
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Analyze connection log JSON files")
    analyze.add_argument("files", nargs="+", help="JSON connection logs")
    analyze.add_argument("--config", help="YAML configuration file")
    analyze.add_argument("--rules", help="Custom rules JSON file")
    analyze.add_argument("--history", help="History JSON file")
    analyze.add_argument("--offline", action="store_true",
                         help="Skip the ThreatFox feed and use custom rules only")
    analyze.add_argument(
        "--run-dir",
        help="Custom output directory (default: reports/{file_name}-{timestamp})"
    )
    analyze.add_argument("--json-out", default="analysis.json",
                         help="JSON report filename (stored in run dir)")
    analyze.add_argument("--txt-out", default="analysis.txt",
                         help="Text report filename (stored in run dir)")
    analyze.set_defaults(func=cmd_analyze)

    rules = subparsers.add_parser("rules", help="Manage custom IOC rules")
    rules.add_argument("--rules", help=f"Custom rules JSON file (default: {DEFAULT_RULES_PATH})")
    rules_actions = rules.add_subparsers(dest="action", required=True)
    rules_actions.add_parser("list")
    add = rules_actions.add_parser("add")
    add.add_argument("type", choices=["ip", "cidr"])
    add.add_argument("value")
    add.add_argument("--malware")
    add.add_argument("--confidence", type=int)
    add.add_argument("--tag", action="append")
    add.add_argument("--description")
    remove = rules_actions.add_parser("remove")
    remove.add_argument("rule_id")
    rules_actions.add_parser("export")
    imp = rules_actions.add_parser("import")
    imp.add_argument("file")
    rules.set_defaults(func=cmd_rules)

    history = subparsers.add_parser("history", help="Inspect analysis history")
    history.add_argument("--history",
                         help=f"History JSON file (default: {DEFAULT_HISTORY_PATH})")
    history_actions = history.add_subparsers(dest="action", required=True)
    hist_list = history_actions.add_parser("list")
    hist_list.add_argument("--limit", type=int, default=20)
    history_actions.add_parser("stats")
    hist_export = history_actions.add_parser("export")
    hist_export.add_argument("--format", choices=["json", "csv"], default="json")
    history_actions.add_parser("clear")
    history.set_defaults(func=cmd_history)

    sample = subparsers.add_parser("sample", help="Print a synthetic dataset")
    sample.add_argument("name", choices=sorted(SAMPLES))
    sample.add_argument("--seed", type=int, default=42)
    sample.add_argument("-o", "--output", help="Write to file instead of stdout")
    sample.set_defaults(func=cmd_sample)

    return parser


def main(argv=None):
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logger(level=getattr(logging, args.log_level.upper(), logging.WARNING))
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
