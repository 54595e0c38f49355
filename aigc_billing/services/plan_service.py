"""
会员套餐目录（只读）
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aigc_billing.core.exceptions import PlanNotFound
from aigc_billing.database import Database
from aigc_billing.models.membership import MemberPlan


class PlanService:
    """套餐查询"""

    def __init__(self, database: Database):
        self.database = database

    async def get_plan_by_id(
        self,
        plan_id: int,
        session: Optional[AsyncSession] = None,
        include_inactive: bool = False
    ) -> MemberPlan:
        if session is None:
            async with self.database.session() as own_session:
                return await self._get_plan(own_session, plan_id, include_inactive)
        return await self._get_plan(session, plan_id, include_inactive)

    @staticmethod
    async def _get_plan(session: AsyncSession, plan_id: int, include_inactive: bool) -> MemberPlan:
        plan = await session.get(MemberPlan, plan_id)
        if plan is None or (not include_inactive and not plan.is_active):
            raise PlanNotFound(plan_id)
        return plan

    async def list_active_plans(self) -> List[MemberPlan]:
        """上架中的套餐，按等级和周期排序"""
        async with self.database.session() as session:
            result = await session.execute(
                select(MemberPlan)
                .where(MemberPlan.is_active == True)  # noqa: E712
                .order_by(MemberPlan.level, MemberPlan.period_type, MemberPlan.id)
            )
            return list(result.scalars().all())
