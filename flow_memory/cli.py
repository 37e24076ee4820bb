"""Command-line interface for the memory system."""

import argparse
import json
import os
import sys
from pathlib import Path

from flow_memory._config import ConfigManager, TeamConfig, resolve_project_root
from flow_memory._logging import configure_logging
from flow_memory._store import FACT_CATEGORIES
from flow_memory.memory_manager import MemoryManager
from flow_memory.output import (
    console,
    create_stats_table,
    print_error,
    print_fact,
    print_proposal,
    print_success,
    print_warning,
)

CATEGORY_CHOICES = sorted(FACT_CATEGORIES)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="flow-memory",
        description="Project memory, team rules and PRD context for AI coding sessions",
    )
    parser.add_argument(
        "--project",
        help="Project root (default: FLOW_MEMORY_PROJECT_ROOT or current directory)",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Print raw JSON results",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # remember
    remember_parser = subparsers.add_parser("remember", help="Store a fact")
    remember_parser.add_argument("fact", help="Fact text")
    remember_parser.add_argument(
        "-c", "--category", default="general", choices=CATEGORY_CHOICES, help="Fact category"
    )
    remember_parser.add_argument(
        "-s", "--scope", default="local", choices=["local", "team"], help="Fact scope"
    )
    remember_parser.add_argument("-m", "--model", help="AI model the fact applies to")
    remember_parser.add_argument("--source", help="Where the fact came from")

    # recall
    recall_parser = subparsers.add_parser("recall", help="Find facts relevant to a query")
    recall_parser.add_argument("query", help="Search query")
    recall_parser.add_argument("-c", "--category", choices=CATEGORY_CHOICES, help="Category filter")
    recall_parser.add_argument("-n", "--limit", type=int, default=5, help="Maximum results")
    recall_parser.add_argument("-m", "--model", help="Model filter")
    recall_parser.add_argument(
        "--local-only", action="store_true", help="Exclude team knowledge"
    )

    # list
    list_parser = subparsers.add_parser("list", help="List stored facts")
    list_parser.add_argument("-s", "--scope", choices=["local", "team"], help="Scope filter")
    list_parser.add_argument("-c", "--category", choices=CATEGORY_CHOICES, help="Category filter")
    list_parser.add_argument("-n", "--limit", type=int, default=50, help="Maximum results")

    # forget
    forget_parser = subparsers.add_parser("forget", help="Delete a fact")
    forget_parser.add_argument("fact_id", help="Fact ID")

    # propose
    propose_parser = subparsers.add_parser("propose", help="Propose a team rule")
    propose_parser.add_argument("rule", help="Rule text")
    propose_parser.add_argument("-c", "--category", choices=CATEGORY_CHOICES, help="Rule category")
    propose_parser.add_argument("-r", "--rationale", help="Why the rule matters")
    propose_parser.add_argument("--source", help="Where the rule came from")

    # proposals
    proposals_parser = subparsers.add_parser("proposals", help="List pending proposals")
    proposals_parser.add_argument(
        "--remote", action="store_true", help="Include the team's pending proposals"
    )

    # vote
    vote_parser = subparsers.add_parser("vote", help="Vote on a proposal")
    vote_parser.add_argument("proposal_id", help="Proposal ID (local or remote)")
    vote_parser.add_argument("vote", choices=["approve", "reject"], help="Your vote")
    vote_parser.add_argument("--comment", help="Optional comment")

    # prd
    prd_parser = subparsers.add_parser("prd", help="Store and query PRD context")
    prd_subparsers = prd_parser.add_subparsers(dest="prd_command")
    prd_store = prd_subparsers.add_parser("store", help="Store a PRD markdown file")
    prd_store.add_argument("file", type=Path, help="PRD file ('-' for stdin)")
    prd_store.add_argument("--project-id", default=MemoryManager.DEFAULT_PROJECT_ID)
    prd_store.add_argument(
        "--section", action="append", dest="sections", help="Only store this section (repeatable)"
    )
    prd_context = prd_subparsers.add_parser("context", help="Get PRD context for a task")
    prd_context.add_argument("task", help="Task description")
    prd_context.add_argument(
        "-t", "--max-tokens", type=int, default=MemoryManager.DEFAULT_CONTEXT_TOKENS
    )
    prd_context.add_argument("--project-id", help="Restrict to one project")
    prd_subparsers.add_parser("list", help="List stored PRDs")
    prd_delete = prd_subparsers.add_parser("delete", help="Delete a stored PRD")
    prd_delete.add_argument("project_id", help="Project ID")
    prd_subparsers.add_parser("clear", help="Delete all stored PRDs")

    # stats
    subparsers.add_parser("stats", help="Show memory statistics")

    # reembed
    subparsers.add_parser("reembed", help="Retry embedding for items stored without a vector")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Sync with the team knowledge service")
    sync_parser.add_argument(
        "--combined", action="store_true", help="Use a single push-then-pull round trip"
    )
    sync_parser.add_argument("--status", action="store_true", help="Show queued work only")

    # team
    team_parser = subparsers.add_parser("team", help="Show or change team settings")
    team_parser.add_argument("--enable", action="store_true", help="Enable team features")
    team_parser.add_argument("--disable", action="store_true", help="Disable team features")
    team_parser.add_argument("--team-id", help="Team ID")
    team_parser.add_argument("--api-url", help="Knowledge service URL")
    team_parser.add_argument("--token", help="Bearer token")
    team_parser.add_argument("--user-id", help="Your user ID on the team")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the team knowledge service")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument(
        "--db", help="SQLite path (default: FLOW_MEMORY_REMOTE_DB or in-memory)"
    )

    return parser


def _print_json(data) -> None:
    console.print_json(json.dumps(data, default=str))


def _failed(result: dict) -> bool:
    if result.get("success") is False:
        print_error(result["error"])
        return True
    return False


def cmd_remember(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the remember command."""
    result = mm.remember_fact(
        args.fact,
        category=args.category,
        scope=args.scope,
        model=args.model,
        source_context=args.source,
    )
    if args.as_json:
        _print_json(result)
        return 0 if result.get("success") else 1
    if _failed(result):
        return 1

    print_success(f"Stored fact: {result['id']}")
    if result.get("proposalCreated"):
        console.print(f"  Team proposal created: [cyan]{result['proposalId']}[/cyan]")
    if not result["hasEmbedding"]:
        print_warning("Embedding failed; the fact will not rank in recall until re-embedded.")
    if result.get("warning"):
        print_warning(result["warning"])
    return 0


def cmd_recall(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the recall command."""
    results = mm.recall_facts(
        args.query,
        category=args.category,
        limit=args.limit,
        include_team=not args.local_only,
        model=args.model,
    )
    if args.as_json:
        _print_json(results)
        return 0
    if not results:
        console.print("[dim]No facts found.[/dim]")
        return 0
    for item in results:
        print_fact(item)
    return 0


def cmd_list(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the list command."""
    facts = mm.list_facts(scope=args.scope, category=args.category, limit=args.limit)
    if args.as_json:
        _print_json(facts)
        return 0
    if not facts:
        console.print("[dim]No facts stored.[/dim]")
        return 0
    for item in facts:
        print_fact(item)
    return 0


def cmd_forget(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the forget command."""
    if mm.forget_fact(args.fact_id)["deleted"]:
        print_success(f"Deleted: {args.fact_id}")
        return 0
    print_error(f"Fact not found: {args.fact_id}")
    return 1


def cmd_propose(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the propose command."""
    result = mm.propose_team_rule(
        args.rule, category=args.category, rationale=args.rationale, source_context=args.source
    )
    if args.as_json:
        _print_json(result)
        return 0 if result.get("success") else 1
    if _failed(result):
        return 1
    print_success(f"Proposal created: {result['id']}")
    console.print("[dim]It will be sent to the team on the next sync.[/dim]")
    return 0


def cmd_proposals(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the proposals command."""
    proposals = mm.get_pending_proposals(include_remote=args.remote)
    if args.as_json:
        _print_json(proposals)
        return 0
    if not proposals:
        console.print("[dim]No pending proposals.[/dim]")
        return 0
    for proposal in proposals:
        print_proposal(proposal)
    return 0


def cmd_vote(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the vote command."""
    result = mm.vote_proposal(args.proposal_id, args.vote, comment=args.comment)
    if args.as_json:
        _print_json(result)
        return 0 if result.get("success") else 1
    if _failed(result):
        return 1
    if result["changed"]:
        print_success(f"Vote changed from {result['previousVote']} to {args.vote}")
    else:
        print_success(f"Vote recorded: {args.vote}")
    return 0


def cmd_prd(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the prd command and its subcommands."""
    if args.prd_command == "store":
        if str(args.file) == "-":
            content = sys.stdin.read()
        else:
            try:
                content = args.file.read_text(encoding="utf-8")
            except OSError as e:
                print_error(f"Cannot read {args.file}: {e}")
                return 1
        result = mm.store_prd(content, project_id=args.project_id, sections=args.sections)
        if args.as_json:
            _print_json(result)
            return 0 if result.get("success") else 1
        if _failed(result):
            return 1
        if not result["stored"]:
            print_warning("No chunks found; nothing stored.")
            return 0
        print_success(
            f"Stored {result['chunks']} chunks from {len(result['sections'])} sections "
            f"for project {result['projectId']}"
        )
        if result["embedded"] < result["chunks"]:
            print_warning(f"{result['chunks'] - result['embedded']} chunks stored without embeddings")
        return 0

    if args.prd_command == "context":
        result = mm.get_prd_context(args.task, max_tokens=args.max_tokens, project_id=args.project_id)
        if args.as_json:
            _print_json(result)
            return 0
        console.print(result["context"] or "[dim]No context fits the token budget.[/dim]")
        console.print(
            f"\n[dim]{result['chunksIncluded']} chunks, top relevance {result['topRelevance']}%[/dim]"
        )
        return 0

    if args.prd_command == "list":
        prds = mm.list_prds()
        if args.as_json:
            _print_json(prds)
            return 0
        if not prds:
            console.print("[dim]No PRDs stored.[/dim]")
        for prd in prds:
            console.print(
                f"[magenta]{prd['projectId']}[/magenta]: {prd['chunks']} chunks "
                f"[dim]({prd['createdAt'][:10]})[/dim]"
            )
        return 0

    if args.prd_command == "delete":
        if mm.delete_prd(args.project_id)["deleted"]:
            print_success(f"Deleted PRD: {args.project_id}")
            return 0
        print_error(f"No PRD stored for project: {args.project_id}")
        return 1

    if args.prd_command == "clear":
        print_success(f"Deleted {mm.clear_prds()['cleared']} chunks")
        return 0

    print_error("Specify a prd subcommand: store, context, list, delete, clear")
    return 1


def cmd_stats(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the stats command."""
    stats = mm.get_memory_stats()
    if args.as_json:
        _print_json(stats)
        return 0

    table = create_stats_table()
    table.add_row("Facts", str(stats["facts"]["total"]))
    table.add_row("Pending proposals", str(stats["proposals"]["pending"]))
    table.add_row("PRD chunks", str(stats["prd"]["chunks"]))
    table.add_row("PRD projects", str(stats["prd"]["projects"]))
    table.add_row("Team enabled", "yes" if stats["teamEnabled"] else "no")
    table.add_row("Last sync", stats["lastSync"] or "never")
    console.print(table)

    if stats["facts"]["byCategory"]:
        console.print("\n[bold]By category:[/bold]")
        for category, count in sorted(stats["facts"]["byCategory"].items()):
            console.print(f"  [cyan]{category}[/cyan]: {count}")
    if stats["facts"]["byScope"]:
        console.print("\n[bold]By scope:[/bold]")
        for scope, count in sorted(stats["facts"]["byScope"].items()):
            console.print(f"  [magenta]{scope}[/magenta]: {count}")
    return 0


def cmd_reembed(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the reembed command."""
    result = mm.reembed_missing()
    print_success(f"Re-embedded {result['reembedded']} items")
    if result["failed"]:
        print_warning(f"{result['failed']} items still have no embedding")
        return 1
    return 0


def cmd_sync(args: argparse.Namespace, mm: MemoryManager) -> int:
    """Handle the sync command."""
    if args.status:
        status = mm.sync_status()
        if args.as_json:
            _print_json(status)
            return 0
        console.print(f"Team enabled:       {'yes' if status['teamEnabled'] else 'no'}")
        console.print(f"Proposals to push:  [green]{status['pendingProposals']}[/green]")
        console.print(f"Votes to push:      [green]{status['pendingVotes']}[/green]")
        console.print(f"Cursor:             [cyan]{status['lastSyncTimestamp'] or 'none'}[/cyan]")
        console.print(f"Last sync:          [dim]{status['lastSyncAt'] or 'never'}[/dim]")
        return 0

    result = mm.sync(combined=args.combined)
    if args.as_json:
        _print_json(result)
        return 0 if result.get("success") else 1
    if result.get("code") == "team_disabled":
        print_error(result["error"])
        return 1

    for failure in result["pushFailures"]:
        print_warning(f"Push failed for {failure['id']}: {failure['error']}")
    if result["errors"]:
        for error in result["errors"]:
            print_error(error)
        return 1

    print_success("Sync complete:")
    console.print(f"  Proposals pushed: [green]{result['pushed']}[/green]")
    console.print(f"  Votes pushed:     [green]{result['votesPushed']}[/green]")
    console.print(f"  Knowledge pulled: [cyan]{result['pulled']}[/cyan]")
    console.print(f"  Decisions:        [cyan]{result['proposalUpdates']}[/cyan]")
    return 0


def cmd_team(args: argparse.Namespace) -> int:
    """Handle the team command (doesn't need MemoryManager)."""
    config = ConfigManager(resolve_project_root(args.project))
    current = config.team_config().to_dict()
    stored = dict(config.load_config().get("team") or {})

    updates = {
        "teamId": args.team_id,
        "apiUrl": args.api_url,
        "token": args.token,
        "userId": args.user_id,
    }
    changed = {k: v for k, v in updates.items() if v is not None}
    if args.enable:
        changed["enabled"] = True
    if args.disable:
        changed["enabled"] = False

    if changed:
        stored.update(changed)
        config.set_team_config(TeamConfig.from_dict(stored))
        current = config.team_config().to_dict()
        print_success("Team settings saved")

    if current.get("token"):
        current["token"] = "***"
    if args.as_json:
        _print_json(current)
        return 0
    for key, value in current.items():
        console.print(f"  [cyan]{key}[/cyan]: {value if value is not None else '[dim]unset[/dim]'}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle the serve command."""
    import uvicorn

    from flow_memory.remote.app import create_app
    from flow_memory.remote.service import KnowledgeService

    db_path = args.db or os.environ.get("FLOW_MEMORY_REMOTE_DB", ":memory:")
    uvicorn.run(create_app(KnowledgeService(db_path)), host=args.host, port=args.port)
    return 0


COMMANDS = {
    "remember": cmd_remember,
    "recall": cmd_recall,
    "list": cmd_list,
    "forget": cmd_forget,
    "propose": cmd_propose,
    "proposals": cmd_proposals,
    "vote": cmd_vote,
    "prd": cmd_prd,
    "stats": cmd_stats,
    "reembed": cmd_reembed,
    "sync": cmd_sync,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose)

    # Handle --no-color flag and NO_COLOR environment variable
    if args.no_color or os.environ.get("NO_COLOR"):
        console.no_color = True

    if not args.command:
        parser.print_help()
        return 0

    # Commands that don't need a MemoryManager
    if args.command == "team":
        return cmd_team(args)
    if args.command == "serve":
        return cmd_serve(args)

    try:
        mm = MemoryManager(project_root=args.project)
    except Exception as e:
        print_error(f"Initializing memory: {e}")
        return 1

    try:
        return COMMANDS[args.command](args, mm)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return 130
    except Exception as e:
        print_error(str(e))
        return 1
    finally:
        mm.close()


if __name__ == "__main__":
    sys.exit(main())
