"""Progress reporting for the terminal.

Usage:
    from hlspipe.reporting import ReportGenerator

    ReportGenerator().show("processing-progress.json")
"""

from hlspipe.reporting.report import ReportGenerator

__all__ = ["ReportGenerator"]
