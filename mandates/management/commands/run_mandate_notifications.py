import json

from django.core.management.base import BaseCommand

from mandates.lifecycle import MandateLifecycle


class Command(BaseCommand):
    help = "Send pre-debit notifications for mandates nearing their debit date (intended for cron)."

    def add_arguments(self, parser):
        parser.add_argument("--json", action="store_true", help="Print the batch summary as JSON.")

    def handle(self, *args, **opts):
        result = MandateLifecycle.from_settings().run_due_notifications()

        if opts.get("json"):
            self.stdout.write(json.dumps(result.as_dict(), default=str))
            return

        self.stdout.write(
            f"processed={result.processed} successful={result.successful} "
            f"failed={result.failed} errors={result.errors} skipped={result.skipped}"
        )
        if result.errors:
            self.stdout.write(self.style.WARNING(f"{result.errors} mandate(s) could not be recorded"))
        else:
            self.stdout.write(self.style.SUCCESS("Notification pass complete"))
