"""
Care Data Migration Engine

Migration pipeline engine for moving resident, medication and care records
from legacy care-management systems into the care platform.

Supports:
- Pluggable source connectors (databases, files, external APIs)
- Field mapping suggestions with confidence scoring
- Typed transformation rules with row-level validation
- Data quality scoring before and after transformation
- Five-phase execution with cooperative pause/resume
- Verified backups and explicit rollback
"""

__version__ = "0.1.0"
