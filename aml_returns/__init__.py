"""
AML/CFT Statistical Returns

Monthly indicator returns submitted by reporting organizations, reviewed by
the supervisory authority, and rolled up into compliance and financial
dashboards. Indicator values use Decimal arithmetic throughout.
"""

__version__ = "1.0.0"
