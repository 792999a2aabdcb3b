"""Batch job CLI commands."""

import json

from scriptorium.batch.job import BatchJob
from scriptorium.batch.trigger import Orchestrator
from scriptorium.errors import ScriptoriumError
from scriptorium.library.models import Stage


def _print_job(job: BatchJob):
    done = job.completed_pages + job.failed_pages
    print(f"{job.id}  {job.type.value:<9} {job.status.value:<10} {done}/{job.total_pages}  {job.book_title or job.book_id}")


def _print_job_detail(job: BatchJob):
    print(f"Job:        {job.id}")
    print(f"Remote:     {job.remote_name}")
    print(f"Book:       {job.book_title} ({job.book_id})")
    print(f"Stage:      {job.type.value}")
    print(f"Status:     {job.status.value} (provider: {job.provider_state or '-'})")
    print(f"Pages:      {job.completed_pages} saved, {job.failed_pages} failed, {job.total_pages} total")
    if job.skipped_page_ids:
        print(f"Skipped:    {len(job.skipped_page_ids)} pages had no usable input")
    if job.error:
        print(f"Error:      {job.error}")
    print(f"Created:    {job.created_at}")
    if job.completed_at:
        print(f"Finished:   {job.completed_at}")


def cmd_run_cycle(args):
    """Collect finished jobs, then queue new work."""
    orchestrator = Orchestrator(args.settings)
    try:
        result = orchestrator.run_cycle(skip_new_work=args.skip_new_work, max_new_jobs=args.max_new_jobs)
    except ScriptoriumError as e:
        print(f"Cycle failed: {e}")
        return 1
    finally:
        orchestrator.close()

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        print(result["summary"]["message"])
        for error in result["errors"]:
            print(f"  ! {error}")
    return 0


def cmd_sync(args):
    """Poll in-flight jobs and save finished results."""
    orchestrator = Orchestrator(args.settings)
    try:
        report = orchestrator.synchronizer.synchronize()
    except ScriptoriumError as e:
        print(f"Sync failed: {e}")
        return 1
    finally:
        orchestrator.close()

    print(
        f"Checked {report.jobs_checked} jobs: {report.jobs_completed} saved "
        f"({report.pages_saved} pages), {report.jobs_still_running} running, "
        f"{report.jobs_failed} failed, {report.jobs_expired} expired"
    )
    for error in report.errors:
        print(f"  ! {error}")
    return 0 if not report.errors else 1


def cmd_queue(args):
    """Submit new jobs within the in-flight ceiling."""
    orchestrator = Orchestrator(args.settings)
    try:
        report = orchestrator.queuer.queue(max_new_jobs=args.max_new_jobs)
    except ScriptoriumError as e:
        print(f"Queue failed: {e}")
        return 1
    finally:
        orchestrator.close()

    if report.at_ceiling:
        print(f"{report.in_flight} jobs in flight; nothing queued")
        return 0
    print(f"Created {len(report.jobs)} jobs (budget {report.budget})")
    for job in report.jobs:
        _print_job(job)
    for error in report.errors:
        print(f"  ! {error}")
    return 0


def cmd_submit(args):
    """Submit one book for a stage."""
    stage = Stage.parse(args.stage)
    orchestrator = Orchestrator(args.settings)
    try:
        if orchestrator.db.get_book(args.book_id) is None:
            print(f"Book not found: {args.book_id}")
            return 1
        if orchestrator.store.has_active(args.book_id, stage):
            print(f"A {stage.value} job is already in flight for {args.book_id}")
            return 1
        plan = orchestrator.planner.submit_book(args.book_id, stage, args.pages)
    except ScriptoriumError as e:
        print(f"Submit failed: {e}")
        return 1
    finally:
        orchestrator.close()

    if not plan.jobs:
        print("No batch job created")
        for error in plan.errors:
            print(f"  ! {error}")
        return 1

    for job in plan.jobs:
        _print_job(job)
    if plan.skipped_page_ids:
        print(f"Skipped {len(plan.skipped_page_ids)} pages without usable input")
    return 0


def cmd_list_jobs(args):
    """List recent batch jobs."""
    orchestrator = Orchestrator(args.settings)
    try:
        jobs = orchestrator.store.list_recent(limit=args.limit, book_id=args.book)
    finally:
        orchestrator.close()

    if not jobs:
        print("No batch jobs")
        return 0
    for job in jobs:
        _print_job(job)
    return 0


def cmd_remote_jobs(args):
    """List jobs known to the provider and match them to local records."""
    orchestrator = Orchestrator(args.settings)
    try:
        remote = orchestrator.client.list_jobs(page_size=args.limit)
        local = {job.remote_name: job for job in orchestrator.store.list_recent(limit=max(args.limit, 500))}
    except ScriptoriumError as e:
        print(f"Error: {e}")
        return 1
    finally:
        orchestrator.close()

    if not remote:
        print("No batch jobs at the provider")
        return 0
    for entry in remote:
        name = entry.get("name", "?")
        state = (entry.get("metadata") or {}).get("state") or entry.get("state") or "-"
        job = local.get(name)
        tracked = job.id if job else "(untracked)"
        print(f"{name}  {state:<22} {tracked}")
    return 0


def cmd_job(args):
    """Show, refresh or collect a single job."""
    orchestrator = Orchestrator(args.settings)
    try:
        if args.refresh:
            job = orchestrator.synchronizer.refresh_job(args.job_id)
        elif args.complete:
            report = orchestrator.synchronizer.reconcile_job(args.job_id)
            for error in report.errors:
                print(f"  ! {error}")
            job = orchestrator.store.require(args.job_id)
        else:
            job = orchestrator.store.require(args.job_id)
    except ScriptoriumError as e:
        print(f"Error: {e}")
        return 1
    finally:
        orchestrator.close()

    _print_job_detail(job)
    return 0


def cmd_cancel(args):
    """Cancel a pending or running job."""
    orchestrator = Orchestrator(args.settings)
    try:
        job = orchestrator.synchronizer.cancel_job(args.job_id)
    except ScriptoriumError as e:
        print(f"Error: {e}")
        return 1
    finally:
        orchestrator.close()

    print(f"Cancelled {job.id}")
    return 0


def setup_batch_commands(subparsers):
    """Setup batch subcommands."""
    cycle_parser = subparsers.add_parser("run-cycle", help="Sync finished jobs and queue new work")
    cycle_parser.add_argument("--skip-new-work", action="store_true", help="Only collect results")
    cycle_parser.add_argument("--max-new-jobs", type=int, default=None, help="Cap on jobs created this cycle")
    cycle_parser.add_argument("--json", action="store_true", help="Print the full cycle summary as JSON")
    cycle_parser.set_defaults(func=cmd_run_cycle)

    sync_parser = subparsers.add_parser("sync", help="Poll in-flight jobs and save results")
    sync_parser.set_defaults(func=cmd_sync)

    queue_parser = subparsers.add_parser("queue", help="Queue new batch jobs")
    queue_parser.add_argument("--max-new-jobs", type=int, default=None, help="Cap on jobs created")
    queue_parser.set_defaults(func=cmd_queue)

    submit_parser = subparsers.add_parser("submit", help="Submit a book for one stage")
    submit_parser.add_argument("book_id", help="Book identifier")
    submit_parser.add_argument("--stage", default="ocr", help="Stage to run (ocr, translate, summary)")
    submit_parser.add_argument("--pages", nargs="+", default=None, help="Limit to these page ids")
    submit_parser.set_defaults(func=cmd_submit)

    jobs_parser = subparsers.add_parser("jobs", help="List recent batch jobs")
    jobs_parser.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_parser.add_argument("--book", default=None, help="Only jobs for this book")
    jobs_parser.set_defaults(func=cmd_list_jobs)

    remote_parser = subparsers.add_parser("remote-jobs", help="List batch jobs at the provider")
    remote_parser.add_argument("--limit", type=int, default=50, help="Number of jobs to request")
    remote_parser.set_defaults(func=cmd_remote_jobs)

    job_parser = subparsers.add_parser("job", help="Show a batch job")
    job_parser.add_argument("job_id", help="Batch job identifier")
    action = job_parser.add_mutually_exclusive_group()
    action.add_argument("--refresh", action="store_true", help="Poll the provider for the latest state")
    action.add_argument("--complete", action="store_true", help="Collect results now if the job finished")
    job_parser.set_defaults(func=cmd_job)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a batch job")
    cancel_parser.add_argument("job_id", help="Batch job identifier")
    cancel_parser.set_defaults(func=cmd_cancel)
