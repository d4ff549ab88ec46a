"""
Job documents and job sources
"""

from cheeky_runner.jobspec.parser import load_job_spec, parse_document
from cheeky_runner.jobspec.source import FileJobSource, JobSource, StaticJobSource

__all__ = ["load_job_spec", "parse_document", "FileJobSource", "JobSource", "StaticJobSource"]
