from .ping import ping
from .process_trigger import process_trigger
from .report_check_result import report_check_result
from .start_check_run import start_check_run

__all__ = [
    "ping",
    "process_trigger",
    "report_check_result",
    "start_check_run",
]
