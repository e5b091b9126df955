from datetime import datetime

from dateutil.relativedelta import relativedelta
from django.utils import timezone


def add_one_month_clamped(value):
    """Add one calendar month, clamping to the last day of the target month.

    Examples:
        Jan 31 -> Feb 28 (Feb 29 in a leap year)
        Mar 31 -> Apr 30
        Jan 15 -> Feb 15
    """
    # relativedelta clamps the day instead of overflowing into the next month
    return value + relativedelta(months=1)


def parse_bank_datetime(value):
    """Parse a bank timestamp in YYYYMMDDhhmmss form into an aware datetime.

    Returns None when the value is missing or does not match the format.
    """
    if not value:
        return None
    try:
        parsed = datetime.strptime(str(value).strip(), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return timezone.make_aware(parsed, timezone.get_current_timezone())


def format_bank_date(value):
    """dd/MM/yyyy, the validity date format the bank expects."""
    return value.strftime("%d/%m/%Y")


def format_bank_datetime(value):
    """dd/MM/yyyy hh:mm AM, used for collectByDate."""
    return value.strftime("%d/%m/%Y %I:%M %p")
