"""Who must be told about a stock owner's lots, or about an appointment."""
import logging
from typing import Dict, List, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.child import Child
from app.models.organization import User, UserRole, AgentLevel, HealthCenter, District, Region
from app.models.stock import Owner, OwnerType
from app.services.notification_service import Recipient

logger = logging.getLogger(__name__)


OWNER_TYPE_LABELS = {
    OwnerType.NATIONAL: "National",
    OwnerType.REGIONAL: "Region",
    OwnerType.DISTRICT: "District",
    OwnerType.HEALTHCENTER: "Health center",
}


def dedupe_by_contact(recipients: List[Recipient]) -> List[Recipient]:
    """Keep the first recipient per contact address (case-insensitive)."""
    seen = set()
    unique = []
    for recipient in recipients:
        contact = (recipient.contact or "").strip().lower()
        if not contact or contact in seen:
            continue
        seen.add(contact)
        unique.append(recipient)
    return unique


class RecipientResolver:
    """Maps stock owners and appointments to the people to notify."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._owner_cache: Dict[Owner, List[Recipient]] = {}

    async def for_owner(self, owner: Owner) -> List[Recipient]:
        """
        Staff responsible for an owner's stock.

        HEALTHCENTER: active agents of the center.
        DISTRICT: active admin agents of the district's centers, plus the
        district's own accounts.
        REGIONAL: active regional accounts of the region.
        NATIONAL: active national accounts.
        """
        if owner in self._owner_cache:
            return self._owner_cache[owner]

        active = User.is_active.is_(True)
        if owner.tier == OwnerType.HEALTHCENTER:
            condition = and_(
                active,
                User.role == UserRole.AGENT.value,
                User.health_center_id == owner.id,
            )
        elif owner.tier == OwnerType.DISTRICT:
            centers = select(HealthCenter.id).where(HealthCenter.district_id == owner.id)
            condition = and_(
                active,
                or_(
                    and_(
                        User.role == UserRole.AGENT.value,
                        User.agent_level == AgentLevel.ADMIN.value,
                        or_(User.district_id == owner.id, User.health_center_id.in_(centers)),
                    ),
                    and_(User.role == UserRole.DISTRICT.value, User.district_id == owner.id),
                ),
            )
        elif owner.tier == OwnerType.REGIONAL:
            condition = and_(active, User.role == UserRole.REGIONAL.value, User.region_id == owner.id)
        else:
            condition = and_(active, User.role == UserRole.NATIONAL.value)

        result = await self.db.execute(
            select(User).where(and_(condition, User.email.is_not(None))).order_by(User.created_at)
        )
        recipients = dedupe_by_contact([
            Recipient(key=str(user.id), name=user.full_name, email=user.email, phone=user.phone)
            for user in result.scalars().all()
        ])

        if not recipients:
            logger.warning(f"No active recipients for {owner}")
        self._owner_cache[owner] = recipients
        return recipients

    @staticmethod
    def for_guardian(child: Child) -> Optional[Recipient]:
        """The single guardian contact of a child, or None without one."""
        if child.guardian_phone:
            return Recipient(
                key=child.guardian_phone.strip(),
                name=child.full_name,
                phone=child.guardian_phone,
                email=None,
            )
        if child.guardian_email:
            return Recipient(
                key=child.guardian_email.strip().lower(),
                name=child.full_name,
                email=child.guardian_email,
            )
        return None

    async def describe_owner(self, owner: Owner) -> Dict[str, Optional[str]]:
        """Display name, type label and location of an owner for messages."""
        label = OWNER_TYPE_LABELS[owner.tier]
        if owner.tier == OwnerType.NATIONAL:
            return {"type": label, "name": "National stock", "location": None}

        model = {
            OwnerType.REGIONAL: Region,
            OwnerType.DISTRICT: District,
            OwnerType.HEALTHCENTER: HealthCenter,
        }[owner.tier]
        entity = await self.db.get(model, owner.id)
        if entity is None:
            return {"type": label, "name": f"{label} {owner.id}", "location": None}

        location = None
        if owner.tier == OwnerType.HEALTHCENTER:
            location = entity.address
            district = await self.db.get(District, entity.district_id)
            if district is not None:
                location = ", ".join(part for part in (entity.address, district.name) if part)
        elif owner.tier == OwnerType.DISTRICT:
            region = await self.db.get(Region, entity.region_id)
            location = region.name if region else None
        return {"type": label, "name": entity.name, "location": location}

    async def owner_name(self, owner: Owner) -> str:
        return (await self.describe_owner(owner))["name"]
