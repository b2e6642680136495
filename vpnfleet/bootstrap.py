"""
Schema creation and default data for a fresh controller
"""

import json
from typing import Dict, Optional

from sqlalchemy import func, select

from .core.config import Settings, config
from .core.database import Database, database
from .core.logging import get_logger
from .models.inbound import InboundTemplateCreate
from .models.node import NodeGroupCreate
from .models.orm import InboundTemplateRecord
from .services.group_service import GroupService
from .services.relay_service import RelayService
from .services.sni_pool_service import SniPoolService
from .services.template_service import TemplateService


logger = get_logger(__name__)

DEFAULT_GROUP = NodeGroupCreate(name="Default", slug="default", description="Nodes without a dedicated group")

DEFAULT_TEMPLATE_NAME = "VLESS Reality"
DEFAULT_TEMPLATE_STREAM = {
    "network": "tcp",
    "security": "reality",
    "realitySettings": {
        "show": False,
        "dest": "{{sni}}:443",
        "serverNames": ["{{sni}}"],
        "privateKey": "{{reality_private}}",
        "shortIds": ["{{REALITY_SID}}"],
    },
}


async def initialize_database(db: Optional[Database] = None, settings: Optional[Settings] = None) -> Dict[str, int]:
    """Create tables, the relay settings row and the built-in SNI pool"""
    db = db or database
    settings = settings or config.settings
    await db.create_all()
    await RelayService(db, settings).status()
    added = await SniPoolService(db, settings).seed_defaults()
    return {"sni_added": added}


async def seed_defaults(db: Optional[Database] = None, settings: Optional[Settings] = None) -> Dict[str, int]:
    """Default group and VLESS-Reality template, only on an empty install"""
    db = db or database
    settings = settings or config.settings
    summary = await initialize_database(db, settings)

    groups = GroupService(db)
    group = await groups.get_by_slug(DEFAULT_GROUP.slug)
    summary["group_created"] = 0
    if group is None:
        group = await groups.create_group(DEFAULT_GROUP)
        summary["group_created"] = 1

    async with db.session() as session:
        count = (await session.execute(select(func.count()).select_from(InboundTemplateRecord))).scalar_one()
    summary["template_created"] = 0
    if count == 0:
        await TemplateService(db).create_template(InboundTemplateCreate(
            name=DEFAULT_TEMPLATE_NAME,
            protocol="vless",
            settings_template=json.dumps({"clients": [], "decryption": "none"}),
            stream_settings_template=json.dumps(DEFAULT_TEMPLATE_STREAM),
            target_group_id=group.id,
            port_range_start=20000,
            port_range_end=40000,
            renew_interval_mins=0,
        ))
        summary["template_created"] = 1
    logger.info(f"Seeded defaults: {summary}")
    return summary
