#!/usr/bin/env python3
"""
Reputation Management CLI

Command-line interface over a Chiral node's reputation store.

Commands:
- score: Show a peer's score and trust level
- summary: Show a peer's reputation summary
- blacklist list|add|remove: Inspect and administer the blacklist
- analytics: Network-wide reputation statistics
- keygen: Create (or show) the node identity
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from chiral.backends.verdict_backend import VerdictBackend
from chiral.p2p.identity import NodeIdentity
from chiral.p2p.reputation.config import ReputationConfig
from chiral.p2p.reputation.errors import ReputationError
from chiral.p2p.reputation.service import ReputationService

logger = logging.getLogger(__name__)


DB_FILENAME = "reputation.db"


def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class ReputationCLI:
    """
    CLI for reputation administration.

    Opens the node's verdict store, replays it into a ReputationService and
    runs one command against it.
    """

    def __init__(self):
        """Initialize CLI."""
        self.service: Optional[ReputationService] = None

    def open_service(self, data_dir: str) -> ReputationService:
        """Load the reputation state stored under `data_dir`."""
        path = Path(data_dir)
        store = VerdictBackend(db_path=str(path / DB_FILENAME))
        self.service = ReputationService(ReputationConfig.from_env(), store=store)
        self.service.restore()
        return self.service

    def score(self, args) -> int:
        """Show a peer's score."""
        score, level = self.service.get_score(args.peer_id)
        blacklisted = self.service.is_blacklisted(args.peer_id)

        print(f"Peer:        {args.peer_id}")
        print(f"Score:       {score:.4f}")
        print(f"Trust level: {level.value}")
        print(f"Blacklisted: {'yes' if blacklisted else 'no'}")
        return 0

    def summary(self, args) -> int:
        """Show a peer's reputation summary."""
        summary = self.service.get_peer_summary(args.peer_id)

        print(f"📋 Reputation summary for {args.peer_id[:16]}...")
        print("-" * 60)
        print(f"  {'Score':<25} {summary.score:.4f}")
        print(f"  {'Trust level':<25} {summary.trust_level.value}")
        print(f"  {'Successful transactions':<25} {summary.successful_transactions}")
        print(f"  {'Failed transactions':<25} {summary.failed_transactions}")
        print(f"  {'Total verdicts':<25} {summary.total_verdicts}")
        print(f"  {'Last updated':<25} {_format_time(summary.last_updated)}")
        print(f"  {'Blacklisted':<25} {'yes' if summary.blacklisted else 'no'}")
        return 0

    def blacklist_list(self, args) -> int:
        """List active blacklist entries."""
        entries = self.service.list_blacklist()

        print("⛔ Blacklisted Peers:")
        print("-" * 80)
        if not entries:
            print("  (none)")
            return 0

        print(f"{'Peer ID':<20} {'Type':<10} {'Since':<25} {'Reason'}")
        print("-" * 80)
        for entry in entries:
            kind = "auto" if entry.is_automatic else "manual"
            print(
                f"{entry.peer_id[:16] + '...':<20} {kind:<10} "
                f"{_format_time(entry.blacklisted_at):<25} {entry.reason}"
            )
        print(f"\nTotal: {len(entries)}")
        return 0

    def blacklist_add(self, args) -> int:
        """Manually blacklist a peer."""
        self.service.blacklist_peer(args.peer_id, args.reason, args.evidence or None)
        print(f"✅ Blacklisted {args.peer_id[:16]}...: {args.reason}")
        return 0

    def blacklist_remove(self, args) -> int:
        """Remove a peer from the blacklist."""
        if not self.service.unblacklist_peer(args.peer_id):
            print(f"❌ Peer {args.peer_id[:16]}... is not blacklisted")
            return 1
        print(f"✅ Removed {args.peer_id[:16]}... from blacklist")
        return 0

    def analytics(self, args) -> int:
        """Display network-wide analytics."""
        snapshot = self.service.get_analytics(recent_limit=args.recent, top_k=args.top)

        print("📊 Chiral Reputation Analytics")
        print("=" * 60)
        print(f"  {'Total peers':<25} {snapshot.total_peers}")
        print(f"  {'Average score':<25} {snapshot.average_score:.4f}")
        print(f"  {'Blacklisted peers':<25} {snapshot.blacklisted_peers}")

        print("\nTrust levels:")
        print("-" * 60)
        for level, count in snapshot.trust_level_distribution.items():
            print(f"  {level.value:<25} {count}")

        if snapshot.top_performers:
            print("\nTop performers:")
            print("-" * 60)
            for summary in snapshot.top_performers:
                print(
                    f"  {summary.peer_id[:16] + '...':<25} {summary.score:.4f} "
                    f"({summary.trust_level.value}, {summary.total_verdicts} verdicts)"
                )

        if snapshot.recent_verdicts:
            print("\nRecent verdicts:")
            print("-" * 60)
            for verdict in snapshot.recent_verdicts:
                print(
                    f"  {_format_time(verdict.issued_at)}  {verdict.outcome.value:<9} "
                    f"{verdict.issuer_id[:12]}... -> {verdict.target_id[:12]}..."
                )
        return 0

    def keygen(self, args) -> int:
        """Create the node identity, or show the existing one."""
        identity = NodeIdentity.load_or_generate(args.data_dir)
        print(f"Peer ID:    {identity.peer_id}")
        print(f"Public key: {identity.public_key_bytes.hex()}")
        return 0

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog="chiral-reputation",
            description="Chiral Reputation Management CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument(
            "--data-dir", default="./chiral_data", help="Node data directory"
        )
        parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # score command
        score_parser = subparsers.add_parser("score", help="Show peer score")
        score_parser.add_argument("peer_id", help="Peer ID")

        # summary command
        summary_parser = subparsers.add_parser("summary", help="Show peer summary")
        summary_parser.add_argument("peer_id", help="Peer ID")

        # blacklist command
        blacklist_parser = subparsers.add_parser("blacklist", help="Manage blacklist")
        blacklist_sub = blacklist_parser.add_subparsers(dest="action", help="Blacklist actions")
        blacklist_sub.add_parser("list", help="List blacklisted peers")
        add_parser = blacklist_sub.add_parser("add", help="Blacklist a peer")
        add_parser.add_argument("peer_id", help="Peer ID")
        add_parser.add_argument("--reason", required=True, help="Reason for blacklisting")
        add_parser.add_argument(
            "--evidence", action="append", help="Evidence reference (repeatable)"
        )
        remove_parser = blacklist_sub.add_parser("remove", help="Remove a peer")
        remove_parser.add_argument("peer_id", help="Peer ID")

        # analytics command
        analytics_parser = subparsers.add_parser("analytics", help="Display analytics")
        analytics_parser.add_argument("--top", type=int, default=10, help="Top performers to show")
        analytics_parser.add_argument("--recent", type=int, default=20, help="Recent verdicts to show")

        # keygen command
        subparsers.add_parser("keygen", help="Create or show node identity")

        return parser

    def dispatch(self, args) -> int:
        """Run a parsed command."""
        if args.command == "keygen":
            return self.keygen(args)

        self.open_service(args.data_dir)

        if args.command == "score":
            return self.score(args)
        elif args.command == "summary":
            return self.summary(args)
        elif args.command == "blacklist":
            if args.action == "add":
                return self.blacklist_add(args)
            elif args.action == "remove":
                return self.blacklist_remove(args)
            return self.blacklist_list(args)
        elif args.command == "analytics":
            return self.analytics(args)
        else:
            print("❌ Unknown command. Use --help for usage.")
            return 1

    def run(self, argv=None) -> int:
        """Run CLI (entry point)."""
        parser = self.create_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

        try:
            return self.dispatch(args)
        except ReputationError as e:
            print(f"❌ {e}")
            return 1


def main():
    """CLI entry point."""
    cli = ReputationCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
