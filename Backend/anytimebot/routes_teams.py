import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import RequestContext, get_request_context, require_owner
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import EventType, Team, TeamMember, TeamRole, User
from .usage_tracker import require_capacity

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/teams", tags=["teams"])


class TeamCreate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None


class MemberCreate(CamelModel):
    email: Optional[str] = None
    name: Optional[str] = None
    timezone: str = "UTC"
    skills: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    role: TeamRole = TeamRole.MEMBER


class MemberUpdate(CamelModel):
    name: Optional[str] = None
    timezone: Optional[str] = None
    skills: Optional[list[str]] = None
    languages: Optional[list[str]] = None
    role: Optional[TeamRole] = None
    is_active: Optional[bool] = None


def member_to_dict(member: TeamMember) -> dict:
    return {
        "id": member.id,
        "teamId": member.team_id,
        "userId": member.user_id,
        "email": member.email,
        "name": member.name,
        "timezone": member.timezone,
        "skills": list(member.skills or []),
        "languages": list(member.languages or []),
        "role": member.role.value,
        "isActive": member.is_active,
        "lastAssignedAt": member.last_assigned_at.isoformat() if member.last_assigned_at else None,
    }


async def _team_members(session: AsyncSession, team_id: int) -> list[TeamMember]:
    result = await session.execute(select(TeamMember).where(TeamMember.team_id == team_id).order_by(TeamMember.id))
    return list(result.scalars().all())


async def _team_to_dict(session: AsyncSession, team: Team) -> dict:
    return {
        "id": team.id,
        "name": team.name,
        "description": team.description,
        "ownerId": team.owner_id,
        "createdAt": team.created_at.isoformat() if team.created_at else None,
        "members": [member_to_dict(m) for m in await _team_members(session, team.id)],
    }


async def get_owned_team(session: AsyncSession, team_id: int, ctx: RequestContext) -> Team:
    team = await session.get(Team, team_id)
    require_owner(ctx, team.owner_id if team else None, "Team")
    return team


async def _get_member(session: AsyncSession, team: Team, member_id: int) -> TeamMember:
    result = await session.execute(
        select(TeamMember).where(TeamMember.id == member_id, TeamMember.team_id == team.id)
    )
    member = result.scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team member not found")
    return member


# ────────────────────────────────────────────────────────────────
# Teams
# ────────────────────────────────────────────────────────────────

@router.get("")
async def list_teams(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(select(Team).where(Team.owner_id == ctx.user_id).order_by(Team.id))
    return success_response([await _team_to_dict(session, team) for team in result.scalars().all()])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_team(
    request: TeamCreate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not request.name or not request.name.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Team name is required")

    team = Team(owner_id=ctx.user_id, name=request.name.strip(), description=request.description)
    session.add(team)
    await session.commit()
    await session.refresh(team)
    logger.info(f"User {ctx.user_id} created team {team.id}")
    return success_response(await _team_to_dict(session, team))


@router.get("/{team_id}")
async def get_team(
    team_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    team = await get_owned_team(session, team_id, ctx)
    return success_response(await _team_to_dict(session, team))


@router.put("/{team_id}")
async def update_team(
    team_id: int,
    request: TeamCreate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    team = await get_owned_team(session, team_id, ctx)
    if request.name is not None:
        if not request.name.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Team name is required")
        team.name = request.name.strip()
    if request.description is not None:
        team.description = request.description
    await session.commit()
    await session.refresh(team)
    return success_response(await _team_to_dict(session, team))


@router.delete("/{team_id}")
async def delete_team(
    team_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    team = await get_owned_team(session, team_id, ctx)
    await session.execute(update(EventType).where(EventType.team_id == team.id).values(team_id=None))
    await session.execute(delete(TeamMember).where(TeamMember.team_id == team.id))
    await session.delete(team)
    await session.commit()
    return success_response({"deleted": True, "id": team_id})


# ────────────────────────────────────────────────────────────────
# Members
# ────────────────────────────────────────────────────────────────

@router.post("/{team_id}/members", status_code=status.HTTP_201_CREATED)
async def add_member(
    team_id: int,
    request: MemberCreate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    team = await get_owned_team(session, team_id, ctx)
    if not request.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email is required")
    email = request.email.strip().lower()

    existing = await session.execute(
        select(TeamMember.id).where(TeamMember.team_id == team.id, TeamMember.email == email)
    )
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Member already exists in this team")

    count = await session.execute(
        select(func.count(TeamMember.id))
        .join(Team, Team.id == TeamMember.team_id)
        .where(Team.owner_id == ctx.user_id)
    )
    await require_capacity(session, ctx.user_id, "team_members", count.scalar_one(), "Team members")

    linked = await session.execute(select(User.id).where(User.email == email))
    member = TeamMember(
        team_id=team.id,
        user_id=linked.scalar_one_or_none(),
        email=email,
        name=request.name,
        timezone=request.timezone,
        skills=request.skills,
        languages=request.languages,
        role=request.role,
        is_active=True,
    )
    session.add(member)
    await session.commit()
    await session.refresh(member)
    logger.info(f"Added member {member.id} to team {team.id}")
    return success_response(member_to_dict(member))


@router.put("/{team_id}/members/{member_id}")
async def update_member(
    team_id: int,
    member_id: int,
    request: MemberUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    team = await get_owned_team(session, team_id, ctx)
    member = await _get_member(session, team, member_id)

    for field, value in request.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        # JSON columns are reassigned, never mutated in place
        setattr(member, field, list(value) if isinstance(value, list) else value)

    await session.commit()
    await session.refresh(member)
    return success_response(member_to_dict(member))


@router.delete("/{team_id}/members/{member_id}")
async def remove_member(
    team_id: int,
    member_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    team = await get_owned_team(session, team_id, ctx)
    member = await _get_member(session, team, member_id)
    await session.delete(member)
    await session.commit()
    return success_response({"deleted": True, "id": member_id})
