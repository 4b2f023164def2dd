"""Ontology CLI - Command-line interface."""

import argparse
import json
import sys

from dotenv import load_dotenv

from ..core.models import (
    ConflictResolutionEnum,
    ObservationTypeEnum,
    PatternStatusEnum,
    PatternTypeEnum,
)
from ..core.schemas import (
    ConflictResolutionOptions,
    ConflictResponse,
    DistillOptions,
    MergeOptions,
    MergeStrategy,
    PatternResponse,
)
from ..observability.logging_config import LogContext, setup_logging_from_settings


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


class OntologyCLI:
    """Command-line interface for the ontology engine."""

    def __init__(self, loop=None):
        self.parser = self._create_parser()
        self._loop = loop

    def _create_parser(self):
        parser = argparse.ArgumentParser(description="Self-learning ontology engine CLI")
        parser.add_argument("--db-url", help="Database URL (defaults to ONTOLOGY_DATABASE_URL)")
        parser.add_argument("--json", action="store_true", help="Output as JSON")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # Init command
        subparsers.add_parser("init", help="Create tables and seed default rules")

        # Observe command
        observe_parser = subparsers.add_parser("observe", help="Queue an observation")
        observe_parser.add_argument("content", help="Observation text")
        observe_parser.add_argument(
            "--type", choices=[t.value for t in ObservationTypeEnum], default="conversation"
        )
        observe_parser.add_argument("--source", help="Source identifier")

        # Run command
        subparsers.add_parser("run", help="Run one learning cycle")

        # Stats command
        subparsers.add_parser("stats", help="Show loop, level and ontology statistics")

        # Pattern commands
        patterns_parser = subparsers.add_parser("patterns", help="List detected patterns")
        patterns_parser.add_argument("--status", choices=[s.value for s in PatternStatusEnum])
        patterns_parser.add_argument("--type", choices=[t.value for t in PatternTypeEnum])
        patterns_parser.add_argument("--limit", type=int, default=20, help="Number of results")

        validate_parser = subparsers.add_parser("validate", help="Mark a pattern as validated")
        validate_parser.add_argument("pattern_id", type=int)

        reject_parser = subparsers.add_parser("reject", help="Mark a pattern as rejected")
        reject_parser.add_argument("pattern_id", type=int)

        # Level commands
        promote_parser = subparsers.add_parser("promote", help="Promote a document one level")
        promote_parser.add_argument("document_id")
        promote_parser.add_argument("--confidence", type=float, help="Confidence after promotion")

        demote_parser = subparsers.add_parser("demote", help="Demote a document one level")
        demote_parser.add_argument("document_id")
        demote_parser.add_argument("--reason", required=True, help="Why the document is demoted")

        # Synthesis commands
        distill_parser = subparsers.add_parser("distill", help="Distill a document")
        distill_parser.add_argument("document_id")
        distill_parser.add_argument("--max-length", type=int)
        distill_parser.add_argument("--target-level", type=int, default=3, choices=[1, 2, 3, 4])

        merge_parser = subparsers.add_parser("merge", help="Merge documents")
        merge_parser.add_argument("document_ids", nargs="+")
        merge_parser.add_argument("--strategy", choices=[s.value for s in MergeStrategy], default="dedupe")
        merge_parser.add_argument("--preserve", action="store_true", help="Do not supersede sources")

        # Conflict commands
        conflicts_parser = subparsers.add_parser("conflicts", help="List conflicts")
        conflicts_parser.add_argument("--all", action="store_true", help="Include resolved conflicts")
        conflicts_parser.add_argument("--limit", type=int, default=20, help="Number of results")

        resolve_parser = subparsers.add_parser("resolve", help="Resolve a pending conflict")
        resolve_parser.add_argument("conflict_id", type=int)
        resolve_parser.add_argument(
            "resolution", choices=[r.value for r in ConflictResolutionEnum if r != ConflictResolutionEnum.PENDING]
        )
        resolve_parser.add_argument("--keep", help="Document to keep when superseding")
        resolve_parser.add_argument("--merge", action="store_true", help="Merge both documents")

        return parser

    def run(self, args=None):
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handler = getattr(self, f"cmd_{parsed.command}", None)
        if handler:
            # One correlation ID per invocation ties its log lines together
            with LogContext(new_correlation=True, command=parsed.command):
                return handler(parsed)
        else:
            print(f"Unknown command: {parsed.command}")
            return 1

    def _get_loop(self, args):
        if self._loop is None:
            from ..core.db import build_engine, create_session_factory, get_engine, init_db
            from ..core.store import OntologyStore
            from ..learning import LearningLoop

            engine = build_engine(args.db_url) if args.db_url else get_engine()
            init_db(engine)
            self._loop = LearningLoop.from_settings(OntologyStore(create_session_factory(engine)))
        return self._loop

    def _report(self, args, result, summary):
        if args.json:
            _print_json(result.to_dict())
        elif result.success:
            print(summary)
        else:
            print(f"FAILED: {result.error}")
        return 0 if result.success else 1

    def cmd_init(self, args):
        print("Initializing database...")
        from ..core.db import build_engine, init_db

        init_db(build_engine(args.db_url) if args.db_url else None)
        print("Database initialized successfully!")
        return 0

    def cmd_observe(self, args):
        loop = self._get_loop(args)
        obs = loop.add_observation(args.content, ObservationTypeEnum(args.type), source_id=args.source)
        print(f"Queued observation {obs.id}")
        return 0

    def cmd_run(self, args):
        result = self._get_loop(args).run_once()
        if args.json:
            _print_json(result.to_dict())
        else:
            print(f"Result: {'SUCCESS' if result.success else 'FAILED'} ({result.duration_ms}ms)")
            for stage, counters in result.stages.items():
                print(f"  {stage:<11} " + ", ".join(f"{k}={v}" for k, v in counters.items()))
            for error in result.errors:
                print(f"  error: {error}")
        return 0 if result.success else 1

    def cmd_stats(self, args):
        stats = self._get_loop(args).get_stats()
        if args.json:
            _print_json(stats)
            return 0

        print(f"Loop: {stats['loop']['stage']} (cycles: {stats['loop']['cycle_count']})")
        print(f"Documents: {stats['levels']['total']} (avg confidence {stats['levels']['avg_confidence']})")
        for label, count in stats["levels"]["distribution"].items():
            print(f"  {label:<16} {count}")
        print(f"Ready for promotion: {stats['levels']['ready_for_promotion']}")
        print(f"Patterns: {stats['ontology']['patterns']}")
        print(f"Conflicts: {stats['ontology']['conflicts']}")
        return 0

    def cmd_patterns(self, args):
        loop = self._get_loop(args)
        patterns = loop.store.get_patterns(
            status=PatternStatusEnum(args.status) if args.status else None,
            pattern_type=PatternTypeEnum(args.type) if args.type else None,
            limit=args.limit,
        )
        rows = [PatternResponse.model_validate(p) for p in patterns]
        if args.json:
            _print_json([row.model_dump(mode="json") for row in rows])
            return 0

        for row in rows:
            print(f"[{row.id}] {row.pattern_type.value:<14} {row.status.value:<10} "
                  f"{row.confidence:.2f}  {row.description}")
        print(f"{len(rows)} patterns")
        return 0

    def cmd_validate(self, args):
        result = self._get_loop(args).validate_pattern(args.pattern_id, True)
        return self._report(args, result, f"Pattern {args.pattern_id} validated")

    def cmd_reject(self, args):
        result = self._get_loop(args).validate_pattern(args.pattern_id, False)
        return self._report(args, result, f"Pattern {args.pattern_id} rejected")

    def cmd_promote(self, args):
        loop = self._get_loop(args)
        result = loop.level_manager.promote(args.document_id, args.confidence)
        return self._report(args, result, f"{args.document_id}: L{result.previous_level} -> L{result.new_level}")

    def cmd_demote(self, args):
        loop = self._get_loop(args)
        result = loop.level_manager.demote(args.document_id, args.reason)
        return self._report(args, result, f"{args.document_id}: L{result.previous_level} -> L{result.new_level}")

    def cmd_distill(self, args):
        loop = self._get_loop(args)
        options = DistillOptions(max_length=args.max_length, target_level=args.target_level)
        result = loop.synthesizer.distill(args.document_id, options)
        return self._report(args, result, f"Distilled into {result.result_document_id}")

    def cmd_merge(self, args):
        loop = self._get_loop(args)
        options = MergeOptions(strategy=MergeStrategy(args.strategy), preserve_originals=args.preserve)
        result = loop.synthesizer.merge(args.document_ids, options)
        return self._report(args, result, f"Merged into {result.result_document_id}")

    def cmd_conflicts(self, args):
        loop = self._get_loop(args)
        resolution = None if args.all else ConflictResolutionEnum.PENDING
        rows = [ConflictResponse.model_validate(c) for c in loop.store.get_conflicts(resolution, args.limit)]
        if args.json:
            _print_json([row.model_dump(mode="json") for row in rows])
            return 0

        for row in rows:
            print(f"[{row.id}] {row.document_a_id} vs {row.document_b_id} "
                  f"({row.conflict_type}) {row.resolution.value}")
        print(f"{len(rows)} conflicts")
        return 0

    def cmd_resolve(self, args):
        loop = self._get_loop(args)
        options = ConflictResolutionOptions(merge_documents=args.merge, keep_document=args.keep)
        result = loop.synthesizer.resolve_conflict(
            args.conflict_id, ConflictResolutionEnum(args.resolution), options
        )
        return self._report(args, result, result.description)


def cli_main():
    """Main entry point for CLI."""
    load_dotenv()
    setup_logging_from_settings()
    cli = OntologyCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    cli_main()
