"""
CRM Pipeline Workflow

Stage pipelines, approval requests, quotations and customer-to-project
conversion on top of a generic document store.
"""

__version__ = "0.1.0"
