"""
Constants for the Garment Fulfillment Tracker application.

This module defines system-wide constants including:
- Application metadata
- Garment sizes and couriers
- Rejection reason codes for packet, dyeing and QA checks
- Production task types
- Accepted QA evidence URL patterns
"""

from typing import Dict, List

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Garment Fulfillment Tracker"
APP_VERSION = "0.1.0"
DATABASE_VERSION = "1.0"

# ============================================================================
# Sizes
# ============================================================================

STANDARD_SIZES: List[str] = ["XS", "S", "M", "L", "XL", "XXL"]
CUSTOM_SIZE = "CUSTOM"
ALL_SIZES: List[str] = STANDARD_SIZES + [CUSTOM_SIZE]

# ============================================================================
# Inventory
# ============================================================================

DEFAULT_RACK_LOCATION = "TBD"
DEFAULT_UNIT = "Unit"

# Quantities are compared and stored at this precision
QUANTITY_DECIMAL_PLACES = 3

# ============================================================================
# Rejection Reasons
# ============================================================================

PACKET_REJECTION_REASONS: Dict[str, str] = {
    "WRONG_FABRIC": "Wrong fabric picked",
    "WRONG_QUANTITY": "Incorrect quantity",
    "DAMAGED_MATERIAL": "Damaged material",
    "MISSING_ITEMS": "Items missing from packet",
    "WRONG_COLOR": "Wrong color or shade",
    "OTHER": "Other",
}

DYEING_REJECTION_REASONS: Dict[str, str] = {
    "FABRIC_DEFECT": "Fabric defect found before dyeing",
    "WRONG_MATERIAL": "Wrong material received",
    "COLOR_MISMATCH": "Color cannot be matched on this fabric",
    "INSUFFICIENT_QUANTITY": "Insufficient material for dyeing",
    "OTHER": "Other",
}

QA_REJECTION_REASONS: Dict[str, str] = {
    "STITCHING_DEFECT": "Stitching defect",
    "MEASUREMENT_MISMATCH": "Measurements do not match",
    "EMBROIDERY_DEFECT": "Embroidery defect",
    "COLOR_ISSUE": "Color issue",
    "FINISHING_ISSUE": "Finishing issue",
    "OTHER": "Other",
}

# ============================================================================
# Production
# ============================================================================

PRODUCTION_TASK_TYPES: List[str] = [
    "cutting",
    "stitching",
    "embroidery",
    "handwork",
    "finishing",
    "pressing",
    "custom",
]

# Name of the persisted cursor used for production head round-robin
PRODUCTION_HEAD_CURSOR = "production_head"

# ============================================================================
# QA Evidence
# ============================================================================

ACCEPTED_VIDEO_URL_PATTERNS: List[str] = [
    r"^https?://(www\.|m\.)?youtube\.com/watch\?v=[\w-]{6,}",
    r"^https?://(www\.)?youtube\.com/shorts/[\w-]{6,}",
    r"^https?://youtu\.be/[\w-]{6,}",
    r"^https?://(www\.)?vimeo\.com/\d+",
]

# ============================================================================
# Dispatch
# ============================================================================

COURIERS: List[str] = ["fedex", "ups", "tcs", "post_ex", "dhl", "pickup", "other"]

# ============================================================================
# Database
# ============================================================================

DATABASE_FILENAME = "fulfillment_tracker.db"
