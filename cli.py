"""
artifactstream CLI (flat-layout friendly).

Usage
-----
artifactstream ingest /cases/host01 --output duckdb --output parquet
artifactstream ingest evtx=/cases/host01/Security.evtx --workers 8 --batch-size 5000
artifactstream decode --kind mft /cases/host01/$MFT --limit 20
artifactstream init-store --duckdb-path data/case.duckdb
artifactstream topics create --partitions 6
artifactstream version

Flags override settings from ``.env`` / environment (see infra/config.py).
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, List, Optional

from contracts.artifacts import ArtifactKind
from infra.config import Settings
from infra.logging_config import setup_logging
from version import DECODER_SET_VERSION, ENGINE_NAME, ENGINE_VERSION, SCHEMA_VERSION


def _settings(args: argparse.Namespace) -> Settings:
    """Settings from env, with the flags the user actually passed on top."""
    overrides: dict[str, dict[str, Any]] = {
        "input": {
            "paths": getattr(args, "inputs", None) or None,
            "host": getattr(args, "host", None),
            "csv_mapping": getattr(args, "csv_mapping", None),
            "hive_root_name": getattr(args, "hive_root_name", None),
            "recursive": False if getattr(args, "no_recursive", False) else None,
            "sniff": False if getattr(args, "no_sniff", False) else None,
        },
        "pipeline": {
            "workers": getattr(args, "workers", None),
            "channel_capacity": getattr(args, "channel_capacity", None),
            "batch_size": getattr(args, "batch_size", None),
            "flush_interval_seconds": getattr(args, "flush_interval", None),
            "hard_timeout_seconds": getattr(args, "hard_timeout", None),
        },
        "retry": {
            "max_attempts": getattr(args, "max_attempts", None),
        },
        "dedup": {
            "granularity": getattr(args, "dedup", None),
            "record_mode": getattr(args, "record_mode", None),
            "store_path": getattr(args, "dedup_store", None),
        },
        "sinks": {
            "outputs": getattr(args, "outputs", None) or None,
            "duckdb_path": getattr(args, "duckdb_path", None),
            "parquet_dir": getattr(args, "parquet_dir", None),
            "kafka_bootstrap": getattr(args, "kafka_bootstrap", None),
            "kafka_topic_prefix": getattr(args, "topic_prefix", None),
            "dead_letter_path": getattr(args, "dead_letter", None),
            "manifest_path": getattr(args, "manifest", None),
        },
    }
    return Settings.from_env().with_overrides(overrides)


def cmd_ingest(args: argparse.Namespace) -> int:
    from runner import run_ingest

    settings = _settings(args)
    if not settings.input.paths:
        raise SystemExit("No inputs: pass paths (or set INPUT__PATHS).")
    return run_ingest(settings)


def cmd_decode(args: argparse.Namespace) -> int:
    from runner import decode_artifact

    return decode_artifact(_settings(args), args.path, kind=args.kind, limit=args.limit)


def cmd_init_store(args: argparse.Namespace) -> int:
    from runner import init_store

    return init_store(_settings(args))


def _topic_manager(args: argparse.Namespace, settings: Settings) -> Any:
    from runner import resolve_schemas
    from sinks.topics import TopicManager

    schemas, _ = resolve_schemas(settings)
    return TopicManager(settings.sinks.kafka_bootstrap, settings.sinks.kafka_topic_prefix, schemas)


def _kinds(args: argparse.Namespace) -> Optional[List[ArtifactKind]]:
    if not getattr(args, "kind", None):
        return None
    return [ArtifactKind.parse(k) for k in args.kind]


def cmd_topics_create(args: argparse.Namespace) -> int:
    settings = _settings(args)
    manager = _topic_manager(args, settings)
    result = manager.create(
        _kinds(args),
        partitions=args.partitions or settings.sinks.kafka_partitions,
        replication=args.replication or settings.sinks.kafka_replication,
    )
    for topic, status in sorted(result.items()):
        print(f"{topic}: {status}")
    return 0 if all(s in ("created", "exists") for s in result.values()) else 1


def cmd_topics_delete(args: argparse.Namespace) -> int:
    manager = _topic_manager(args, _settings(args))
    result = manager.delete(_kinds(args))
    for topic, status in sorted(result.items()):
        print(f"{topic}: {status}")
    return 0 if all(s == "deleted" for s in result.values()) else 1


def cmd_topics_list(args: argparse.Namespace) -> int:
    manager = _topic_manager(args, _settings(args))
    for topic in manager.list():
        print(topic)
    return 0


def cmd_version(args: argparse.Namespace) -> int:  # pylint: disable=unused-argument
    print(f"ENGINE_NAME={ENGINE_NAME}")
    print(f"ENGINE_VERSION={ENGINE_VERSION}")
    print(f"DECODER_SET_VERSION={DECODER_SET_VERSION}")
    print(f"SCHEMA_VERSION={SCHEMA_VERSION}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="artifactstream", description="Forensic artifact ingestion")
    p.add_argument("--log-level", default=None, help="DEBUG|INFO|WARNING|ERROR (or ARTIFACTSTREAM_LOG_LEVEL).")
    p.add_argument("--log-json", action="store_true", default=None, help="JSON logs on stderr.")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_store_options(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--duckdb-path", default=None, help="DuckDB database file (or SINKS__DUCKDB_PATH).")
        sp.add_argument("--dedup-store", default=None, help="DuckDB fingerprint store (or DEDUP__STORE_PATH).")
        sp.add_argument("--csv-mapping", default=None, help="JSON column mapping for CSV artifacts.")

    def add_kafka_options(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--kafka-bootstrap", default=None, help="Kafka bootstrap servers (or KAFKA_BOOTSTRAP_SERVERS).")
        sp.add_argument("--topic-prefix", default=None, help="Topic prefix (or SINKS__KAFKA_TOPIC_PREFIX).")

    sp = sub.add_parser("ingest", help="Decode artifacts and deliver records to the configured sinks.")
    sp.add_argument("inputs", nargs="*", help="Files, directories or kind=path entries.")
    sp.add_argument("--host", default=None, help="Source host recorded on every record.")
    sp.add_argument("--no-recursive", action="store_true", help="Do not walk sub-directories.")
    sp.add_argument("--no-sniff", action="store_true", help="Disable signature-based kind detection.")
    sp.add_argument("--hive-root-name", default=None, help="Prefix of registry key paths. Default: ROOT")
    sp.add_argument(
        "--output",
        dest="outputs",
        action="append",
        choices=["duckdb", "parquet", "kafka"],
        default=None,
        help="Sink to deliver to. Repeatable. Default: duckdb",
    )
    sp.add_argument("--parquet-dir", default=None, help="Parquet dataset directory.")
    sp.add_argument("--workers", type=int, default=None, help="Concurrent decode workers.")
    sp.add_argument("--channel-capacity", type=int, default=None, help="Bounded channel size (records).")
    sp.add_argument("--batch-size", type=int, default=None, help="Records per delivered batch.")
    sp.add_argument("--flush-interval", type=float, default=None, help="Seconds before a partial batch is flushed.")
    sp.add_argument("--hard-timeout", type=float, default=None, help="Abort the run after N seconds.")
    sp.add_argument("--max-attempts", type=int, default=None, help="Delivery attempts per batch.")
    sp.add_argument("--dedup", choices=["artifact", "record", "both"], default=None, help="Dedup granularity.")
    sp.add_argument("--record-mode", choices=["position", "content"], default=None, help="Record fingerprint mode.")
    sp.add_argument("--dead-letter", default=None, help="JSONL file for undeliverable batches.")
    sp.add_argument("--manifest", default=None, help="Run manifest path (file or directory).")
    add_store_options(sp)
    add_kafka_options(sp)
    sp.set_defaults(func=cmd_ingest)

    sp = sub.add_parser("decode", help="Decode one artifact and print JSON lines (no sink).")
    sp.add_argument("path", help="Artifact file.")
    sp.add_argument("--kind", default=None, help="Artifact kind (evtx, mft, hive, srum, csv). Default: detect.")
    sp.add_argument("--limit", type=int, default=None, help="Stop after N records.")
    sp.add_argument("--record-mode", choices=["position", "content"], default=None, help="Record fingerprint mode.")
    sp.add_argument("--host", default=None, help="Source host recorded on every record.")
    sp.add_argument("--csv-mapping", default=None, help="JSON column mapping for CSV artifacts.")
    sp.add_argument("--hive-root-name", default=None, help="Prefix of registry key paths. Default: ROOT")
    sp.set_defaults(func=cmd_decode)

    sp = sub.add_parser("init-store", help="Create the per-kind DuckDB tables.")
    add_store_options(sp)
    sp.set_defaults(func=cmd_init_store)

    sp = sub.add_parser("topics", help="Manage the Kafka topics.")
    tsub = sp.add_subparsers(dest="topics_cmd", required=True)

    tp = tsub.add_parser("create", help="Create one topic per kind.")
    tp.add_argument("--kind", action="append", default=None, help="Restrict to a kind. Repeatable.")
    tp.add_argument("--partitions", type=int, default=None, help="Partitions per topic.")
    tp.add_argument("--replication", type=int, default=None, help="Replication factor.")
    add_kafka_options(tp)
    tp.set_defaults(func=cmd_topics_create)

    tp = tsub.add_parser("delete", help="Delete the per-kind topics.")
    tp.add_argument("--kind", action="append", default=None, help="Restrict to a kind. Repeatable.")
    add_kafka_options(tp)
    tp.set_defaults(func=cmd_topics_delete)

    tp = tsub.add_parser("list", help="List topics with the configured prefix.")
    add_kafka_options(tp)
    tp.set_defaults(func=cmd_topics_list)

    sp = sub.add_parser("version", help="Print engine, decoder set and schema versions.")
    sp.set_defaults(func=cmd_version)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=args.log_level, json_logs=args.log_json)
    return int(args.func(args) or 0)


if __name__ == "__main__":
    sys.exit(main())
