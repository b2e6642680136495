"""
Business logic services for the fleet controller
"""

from .auth_service import AuthService
from .capacity import CapacityEstimator
from .group_service import GroupService
from .health_monitor import HealthMonitor
from .heartbeat_service import HeartbeatService
from .node_config_service import NodeConfigService
from .node_service import NodeService
from .orchestration_service import OrchestrationService
from .relay_service import RelayService
from .rotation_scheduler import RotationScheduler
from .sni_pool_service import SniPoolService
from .ssh_service import SSHService
from .template_engine import TemplateEngine
from .template_service import TemplateService

__all__ = [
    'AuthService',
    'CapacityEstimator',
    'GroupService',
    'HealthMonitor',
    'HeartbeatService',
    'NodeConfigService',
    'NodeService',
    'OrchestrationService',
    'RelayService',
    'RotationScheduler',
    'SniPoolService',
    'SSHService',
    'TemplateEngine',
    'TemplateService',
]
