"""
import_engine - Batch CSV product import pipeline.

Public API:
    JobController(job_id, run_token).run() → final status
    run_job(job_id, run_token)             → final status
    CsvSource, RowProcessor, CapacityChecker
    states.transition / states.ACTION_SOURCES
    UploadReport
"""

from import_engine.importer import JobController, run_job    # noqa: F401
from import_engine.csv_parser import CsvSource                # noqa: F401
from import_engine.row_processor import RowProcessor          # noqa: F401
from import_engine.capacity import CapacityChecker            # noqa: F401
from import_engine.report import UploadReport                 # noqa: F401
from import_engine import states                              # noqa: F401
