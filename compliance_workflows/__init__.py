"""
Compliance Workflows

A tenant-isolated workflow engine for compliance records: versioned stage
templates, pinned instances with optimistic concurrency, SLA deadline
tracking under pause/resume, and rule-based owner assignment.
"""

__version__ = "1.0.0"
