# network_engine/__init__.py
"""
Network engine - matrix placement, multi-level commissions and tier qualification.
"""

# Services
from network_engine.services.placement_service import MatrixPlacementService
from network_engine.services.commission_service import CommissionService, CommissionRunResult
from network_engine.services.volume_service import VolumeService
from network_engine.services.qualification_service import TierQualificationService, TierChangeResult
from network_engine.services.compliance_service import ComplianceService
from network_engine.services.registration_service import RegistrationService, RegistrationResult
from network_engine.repository import MemberRepository

# Configuration
from network_engine.config.tiers import InvestmentTier, TierTable, get_tier_table

# Utilities
from network_engine.utils.time_machine import timeMachine

# Events
from network_engine.events.event_bus import eventBus, EngineEvents

__all__ = [
    # Services
    'MatrixPlacementService',
    'CommissionService',
    'CommissionRunResult',
    'VolumeService',
    'TierQualificationService',
    'TierChangeResult',
    'ComplianceService',
    'RegistrationService',
    'RegistrationResult',
    'MemberRepository',

    # Config
    'InvestmentTier',
    'TierTable',
    'get_tier_table',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'EngineEvents',
]
