import json

from django.core.management.base import BaseCommand

from mandates.lifecycle import MandateLifecycle


class Command(BaseCommand):
    help = "Execute every due recurring mandate debit (intended for cron)."

    def add_arguments(self, parser):
        parser.add_argument("--json", action="store_true", help="Print the batch summary as JSON.")

    def handle(self, *args, **opts):
        result = MandateLifecycle.from_settings().run_due_executions()

        if opts.get("json"):
            self.stdout.write(json.dumps(result.as_dict(), default=str))
            return

        self.stdout.write(
            f"processed={result.processed} successful={result.successful} "
            f"failed={result.failed} errors={result.errors} skipped={result.skipped}"
        )
        for row in result.results:
            line = f"  organisation={row.get('organisation_id')} status={row.get('status')}"
            if row.get("error"):
                line += f" error={row['error']}"
            self.stdout.write(line)
        if result.errors:
            self.stdout.write(self.style.WARNING(f"{result.errors} mandate(s) could not be recorded"))
        else:
            self.stdout.write(self.style.SUCCESS("Execution pass complete"))
