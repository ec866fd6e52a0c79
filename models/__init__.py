"""
Database models for the network engine.
Import all models here for easy access and so metadata sees every table.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.member import Member
from models.transaction import Transaction
from models.matrix_position import MatrixPosition
from models.commission import Commission

# Qualification and audit models
from models.tier_qualification import TierQualification
from models.tier_change import TierChange
from models.period_stats import PeriodStats
from models.team_volume import TeamVolume
from models.compliance_violation import ComplianceViolation

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'Member',
    'Transaction',
    'MatrixPosition',
    'Commission',

    # Qualification
    'TierQualification',
    'TierChange',
    'PeriodStats',
    'TeamVolume',
    'ComplianceViolation',
]
