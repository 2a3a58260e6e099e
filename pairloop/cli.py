#!/usr/bin/env python3
"""pairloop CLI entrypoint."""

import sys
import argparse
import logging
from pathlib import Path

from pairloop.prd.models import TaskKind
from pairloop.prd.store import (
    DEFAULT_TASKS_DIR,
    PrdError,
    PrdExistsError,
    PrdValidationError,
    TaskStore,
    find_prd_files,
)


def resolve_prd_path(args) -> Path:
    """PRD file from --file, or the only prd-*.json in --dir."""
    if args.file:
        return Path(args.file)

    prd_files = find_prd_files(Path(args.dir))
    if len(prd_files) == 0:
        print(f"ERROR: No PRD found in {args.dir}. Create one with 'pairloop create <name>'")
        sys.exit(2)
    elif len(prd_files) > 1:
        print("ERROR: Multiple PRDs found. Use --file to specify one:")
        for p in prd_files:
            print(f"  {p}")
        sys.exit(2)
    return prd_files[0]


def open_store(args) -> TaskStore:
    store = TaskStore()
    try:
        store.load(resolve_prd_path(args))
    except (PrdError, PrdValidationError) as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    return store


def report(result) -> int:
    if result.success:
        print(result.message)
        return 0
    print(f"ERROR: {result.message}")
    return 1


def format_task(task) -> str:
    mark = "x" if task.is_complete else " "
    if task.kind is TaskKind.IMPLEMENTATION:
        return f"[{mark}] {task.id}  phase {task.phase}  {task.status:<11}  {task.title}"
    return f"[{mark}] {task.id}  priority {task.priority}  {task.title}"


def cmd_create(args):
    path = Path(args.dir)
    try:
        store = TaskStore.create(args.name, args.description or args.name, directory=path)
    except PrdExistsError as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    print(f"Created {store.path}")
    return 0


def cmd_status(args):
    store = open_store(args)
    prd = store.prd
    progress = store.get_progress()

    print(f"PRD:      {prd.name} (v{prd.version})")
    print(f"Status:   {prd.status}")
    print(f"Progress: {progress['completed']}/{progress['total']} ({progress['percentage']}%)")

    next_task = store.get_next_task()
    if next_task:
        print(f"Next:     {next_task.id} - {next_task.title}")
    elif store.is_complete():
        print("Next:     (all tasks complete)")

    pending_reviews = store.get_pending_review_tasks()
    if pending_reviews:
        print(f"Reviews:  {len(pending_reviews)} pending")
    return 0


def cmd_list(args):
    store = open_store(args)
    tasks = store.get_all_tasks()
    if not tasks:
        print("No tasks")
        return 0

    for task in sorted(tasks, key=lambda t: t.sort_key):
        if args.pending and task.is_complete:
            continue
        print(format_task(task))
    return 0


def cmd_next(args):
    store = open_store(args)
    task = store.get_next_task()
    if task is None:
        print("No runnable tasks")
        return 0

    print(format_task(task))
    if task.description:
        print(f"  {task.description}")
    if task.depends_on:
        print(f"  Depends on: {', '.join(task.depends_on)}")
    return 0


def cmd_add(args):
    store = open_store(args)
    result = store.add_issue(
        args.title,
        description=args.description,
        phase=args.phase,
        priority=args.priority,
        files=args.files,
    )
    store.close()
    return report(result)


def cmd_note(args):
    store = open_store(args)
    result = store.update_note(args.id, args.note, append=not args.replace)
    store.close()
    return report(result)


def cmd_priority(args):
    store = open_store(args)
    result = store.update_priority(args.id, args.priority)
    store.close()
    return report(result)


def cmd_start(args):
    store = open_store(args)
    result = store.start_task(args.id)
    store.close()
    return report(result)


def cmd_done(args):
    store = open_store(args)
    result = store.mark_complete(args.id)
    store.close()
    return report(result)


def cmd_skip(args):
    store = open_store(args)
    result = store.mark_skipped(args.id, args.reason)
    store.close()
    return report(result)


def cmd_review(args):
    store = open_store(args)

    if args.id:
        if not args.finding:
            print("ERROR: --finding is required when recording a review")
            return 2
        result = store.update_review_finding(args.id, args.finding, args.action)
        store.close()
        return report(result)

    reviews = store.get_review_tasks()
    if not reviews:
        print("No review tasks")
        return 0
    for review in reviews:
        print(f"{review.id}  {review.status:<9}  [{review.category}] {review.check}")
        if review.finding:
            print(f"  Finding: {review.finding}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog='pairloop', description='PRD task store and pair-mode tools')
    parser.add_argument('--dir', '-d', default=DEFAULT_TASKS_DIR, help='Directory holding prd-*.json files')
    parser.add_argument('--file', '-f', help='PRD file (overrides --dir lookup)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show info-level logs')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # pairloop create
    p_create = subparsers.add_parser('create', help='Create an empty PRD')
    p_create.add_argument('name', help='PRD name')
    p_create.add_argument('--description', help='One-line description (defaults to name)')
    p_create.set_defaults(func=cmd_create)

    # pairloop status
    p_status = subparsers.add_parser('status', help='Show PRD progress')
    p_status.set_defaults(func=cmd_status)

    # pairloop list
    p_list = subparsers.add_parser('list', help='List tasks')
    p_list.add_argument('--pending', action='store_true', help='Only incomplete tasks')
    p_list.set_defaults(func=cmd_list)

    # pairloop next
    p_next = subparsers.add_parser('next', help='Show the next runnable task')
    p_next.set_defaults(func=cmd_next)

    # pairloop add
    p_add = subparsers.add_parser('add', help='Add a task or story')
    p_add.add_argument('title', help='Task title')
    p_add.add_argument('--description', help='Longer description')
    p_add.add_argument('--phase', type=int, help='Phase (implementation tasks)')
    p_add.add_argument('--priority', type=int, help='Priority (user stories)')
    p_add.add_argument('--files', nargs='+', help='Files the task touches')
    p_add.set_defaults(func=cmd_add)

    # pairloop note
    p_note = subparsers.add_parser('note', help='Add a note to a task')
    p_note.add_argument('id', help='Task ID')
    p_note.add_argument('note', help='Note text')
    p_note.add_argument('--replace', action='store_true', help='Replace existing notes')
    p_note.set_defaults(func=cmd_note)

    # pairloop priority
    p_priority = subparsers.add_parser('priority', help='Set phase or priority')
    p_priority.add_argument('id', help='Task ID')
    p_priority.add_argument('priority', type=int, help='New phase or priority')
    p_priority.set_defaults(func=cmd_priority)

    # pairloop start
    p_start = subparsers.add_parser('start', help='Mark a task as started')
    p_start.add_argument('id', help='Task ID')
    p_start.set_defaults(func=cmd_start)

    # pairloop done
    p_done = subparsers.add_parser('done', help='Mark a task complete')
    p_done.add_argument('id', help='Task ID')
    p_done.set_defaults(func=cmd_done)

    # pairloop skip
    p_skip = subparsers.add_parser('skip', help='Complete a task without doing it')
    p_skip.add_argument('id', help='Task ID')
    p_skip.add_argument('--reason', '-m', help='Why it was skipped')
    p_skip.set_defaults(func=cmd_skip)

    # pairloop review
    p_review = subparsers.add_parser('review', help='List review tasks or record a finding')
    p_review.add_argument('id', nargs='?', help='Review task ID to record a finding for')
    p_review.add_argument('--finding', help='What the review found')
    p_review.add_argument('--action', help='Follow-up action required')
    p_review.set_defaults(func=cmd_review)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
