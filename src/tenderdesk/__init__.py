"""
tenderdesk - Tender lifecycle engine for a freelance and professional marketplace

Drives tenders from draft to publication, closes them when their deadline
elapses, and keeps sealed-bid proposals hidden from everyone, the owner
included, until an explicit reveal.
"""

from tenderdesk.desk import TenderDesk

__version__ = "0.1.0"
__all__ = ["TenderDesk", "__version__"]
