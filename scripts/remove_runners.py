import argparse
import logging
import os

from registry.github_registry import GitHubRunnerRegistry, RegistryError

log = logging.getLogger("scripts.remove_runners")


def select_runners(runners, labels=None, offline_only=False):
    wanted = set(labels or [])
    selected = []
    for runner in runners:
        if wanted and not runner.labels & wanted:
            continue
        if offline_only and runner.online:
            continue
        selected.append(runner)
    return selected


def remove_runners(registry, labels=None, offline_only=False, dry_run=False):
    """
    Delete matching registrations (all of them when no labels are given).
    Every deletion is attempted; the first failure is raised at the end.
    """
    runners = select_runners(registry.list_runners(), labels, offline_only)
    if not runners:
        log.info("No runners found")
        return []

    removed = []
    first_error = None
    for runner in runners:
        if dry_run:
            log.info("Would remove runner %s (%s)", runner.name, runner.id)
            continue
        try:
            if registry.delete_runner(runner.id):
                removed.append(runner.id)
                log.info("Runner %s is removed", runner.name)
            else:
                log.info("Runner %s was already gone", runner.name)
        except RegistryError as e:
            log.error("Runner removal error for %s: %s", runner.name, e)
            first_error = first_error or e
    if first_error:
        raise first_error
    return removed


def main():
    parser = argparse.ArgumentParser(description="Bulk-remove self-hosted runner registrations from a repository.")
    parser.add_argument("--repository", default=os.getenv("GITHUB_REPOSITORY"), help="owner/repo")
    parser.add_argument("--label", action="append", help="Only remove runners carrying this label (repeatable)")
    parser.add_argument("--offline-only", action="store_true", help="Skip runners that are online")
    parser.add_argument("--dry-run", action="store_true", help="List what would be removed")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    token = os.getenv("GITHUB_TOKEN") or os.getenv("TOKEN")
    if not token or not args.repository:
        raise SystemExit("GITHUB_TOKEN and --repository (or GITHUB_REPOSITORY) are required")

    registry = GitHubRunnerRegistry(token, args.repository)
    removed = remove_runners(registry, labels=args.label, offline_only=args.offline_only, dry_run=args.dry_run)
    print(f"Removed {len(removed)} runners")


if __name__ == "__main__":
    main()
