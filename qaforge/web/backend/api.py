from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from qaforge.db.models import Project, Ticket
from qaforge.db.repository import Database, TICKET_STATUSES
from qaforge.message_store import MessageStore
from qaforge.orchestrator import AnalysisOrchestrator, AnalysisRequest, DEFAULT_CANCEL_REASON, MODES
from qaforge.output import print_error

router = APIRouter()


class ProjectCreate(BaseModel):
    name: str
    directory_path: str
    description: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    directory_path: Optional[str] = None
    description: Optional[str] = None


class TicketCreate(BaseModel):
    title: str
    description: str = ""
    status: str = "todo"
    code_context: Optional[str] = None
    mode: str = "ask"
    id: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class AnalyzeBody(BaseModel):
    question: str
    mode: Optional[str] = None
    code_context: Optional[str] = None


class StopBody(BaseModel):
    reason: str = DEFAULT_CANCEL_REASON


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_store(request: Request) -> MessageStore:
    return request.app.state.message_store


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.orchestrator


def project_to_dict(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "directory_path": project.directory_path,
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "updated_at": project.updated_at.isoformat() if project.updated_at else None,
    }


def ticket_to_dict(ticket: Ticket) -> dict:
    return {
        "id": ticket.id,
        "project_id": ticket.project_id,
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status,
        "code_context": ticket.code_context,
        "analysis_result": ticket.analysis_result,
        "is_analyzing": ticket.is_analyzing,
        "mode": ticket.mode,
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
        "updated_at": ticket.updated_at.isoformat() if ticket.updated_at else None,
    }


def storage_error(e: SQLAlchemyError) -> HTTPException:
    print_error(f"Storage error: {e}")
    return HTTPException(status_code=500, detail="Storage error")


async def require_ticket(db: Database, ticket_id: str) -> Ticket:
    try:
        ticket = await db.get_subject(ticket_id)
    except SQLAlchemyError as e:
        raise storage_error(e)
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket


# =============================================================================
# Projects
# =============================================================================

@router.get("/projects")
async def list_projects(db: Database = Depends(get_database)) -> List[dict]:
    try:
        return [project_to_dict(p) for p in await db.list_projects()]
    except SQLAlchemyError as e:
        raise storage_error(e)


@router.post("/projects", status_code=201)
async def create_project(req: ProjectCreate, db: Database = Depends(get_database)):
    try:
        project = await db.create_project(req.name, req.directory_path, req.description)
    except SQLAlchemyError as e:
        raise storage_error(e)
    return project_to_dict(project)


@router.get("/projects/{project_id}")
async def get_project(project_id: str, db: Database = Depends(get_database)):
    try:
        project = await db.get_project(project_id)
    except SQLAlchemyError as e:
        raise storage_error(e)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project_to_dict(project)


@router.put("/projects/{project_id}")
async def update_project(project_id: str, req: ProjectUpdate, db: Database = Depends(get_database)):
    try:
        project = await db.update_project(project_id, **req.model_dump(exclude_none=True))
    except SQLAlchemyError as e:
        raise storage_error(e)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project_to_dict(project)


@router.delete("/projects/{project_id}")
async def delete_project(project_id: str, db: Database = Depends(get_database)):
    try:
        deleted = await db.delete_project(project_id)
    except SQLAlchemyError as e:
        raise storage_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Project not found")
    return {"success": True}


# =============================================================================
# Tickets
# =============================================================================

@router.get("/projects/{project_id}/tickets")
async def list_tickets(project_id: str, db: Database = Depends(get_database)) -> List[dict]:
    try:
        return [ticket_to_dict(t) for t in await db.list_tickets_by_project(project_id)]
    except SQLAlchemyError as e:
        raise storage_error(e)


@router.post("/projects/{project_id}/tickets", status_code=201)
async def create_ticket(project_id: str, req: TicketCreate, db: Database = Depends(get_database)):
    if req.status not in TICKET_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status. Allowed: {', '.join(TICKET_STATUSES)}")
    if req.mode not in MODES:
        raise HTTPException(status_code=400, detail=f"Invalid mode. Allowed: {', '.join(MODES)}")
    try:
        if await db.get_project(project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        ticket = await db.create_subject(
            req.title,
            subject_id=req.id,
            project_id=project_id,
            description=req.description,
            status=req.status,
            code_context=req.code_context,
            mode=req.mode,
        )
    except SQLAlchemyError as e:
        raise storage_error(e)
    return ticket_to_dict(ticket)


@router.get("/tickets/{ticket_id}")
async def get_ticket(ticket_id: str, db: Database = Depends(get_database)):
    return ticket_to_dict(await require_ticket(db, ticket_id))


@router.put("/tickets/{ticket_id}/status")
async def update_ticket_status(ticket_id: str, req: StatusUpdate, db: Database = Depends(get_database)):
    if req.status not in TICKET_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status. Allowed: {', '.join(TICKET_STATUSES)}")
    try:
        updated = await db.update_ticket_status(ticket_id, req.status)
    except SQLAlchemyError as e:
        raise storage_error(e)
    if not updated:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return {"success": True, "status": req.status}


# =============================================================================
# Analysis
# =============================================================================

@router.post("/tickets/{ticket_id}/analyze")
async def analyze_ticket(
    ticket_id: str,
    req: AnalyzeBody,
    db: Database = Depends(get_database),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    """Start an analysis in the background; progress arrives over /ws."""
    try:
        ticket = await db.get_subject(ticket_id)
    except SQLAlchemyError as e:
        raise storage_error(e)

    request = AnalysisRequest(
        subject_id=ticket_id,
        question=req.question,
        mode=req.mode or (ticket.mode if ticket else "ask"),
        project_id=ticket.project_id if ticket else None,
        code_context=req.code_context or (ticket.code_context if ticket else "") or "",
    )
    accepted = await orchestrator.start_analysis(request)
    if not accepted.accepted:
        raise HTTPException(status_code=409, detail=accepted.message)
    return JSONResponse(status_code=202, content=accepted.to_dict())


@router.post("/tickets/{ticket_id}/stop-analysis")
async def stop_analysis(
    ticket_id: str,
    req: Optional[StopBody] = None,
    db: Database = Depends(get_database),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    await require_ticket(db, ticket_id)
    reason = req.reason if req else DEFAULT_CANCEL_REASON
    result = await orchestrator.stop_analysis(ticket_id, reason)
    return result.to_dict()


@router.get("/tickets/{ticket_id}/sessions")
async def list_sessions(ticket_id: str, db: Database = Depends(get_database)):
    try:
        sessions = await db.list_sessions(ticket_id)
    except SQLAlchemyError as e:
        raise storage_error(e)
    return [
        {
            "id": s.id,
            "ticket_id": s.ticket_id,
            "status": s.status,
            "started_at": s.started_at.isoformat() if s.started_at else None,
            "completed_at": s.completed_at.isoformat() if s.completed_at else None,
            "error_message": s.error_message,
        }
        for s in sessions
    ]


# =============================================================================
# Logs
# =============================================================================

@router.get("/tickets/{ticket_id}/logs")
async def get_logs(
    ticket_id: str,
    limit: Optional[int] = Query(None),
    offset: Optional[int] = Query(None),
    store: MessageStore = Depends(get_store),
):
    """Persisted logs, paginated. limit is clamped to [1, 1000] (default 100)."""
    try:
        page = await store.page(ticket_id, limit=limit, offset=offset)
    except SQLAlchemyError as e:
        raise storage_error(e)
    return page.to_dict()


@router.get("/tickets/{ticket_id}/logs/recent")
async def get_recent_logs(ticket_id: str, store: MessageStore = Depends(get_store)):
    try:
        events = await store.query(ticket_id)
    except SQLAlchemyError as e:
        raise storage_error(e)
    return {"events": [event.to_dict() for event in events], "count": len(events)}


@router.delete("/tickets/{ticket_id}/logs")
async def clear_logs(ticket_id: str, store: MessageStore = Depends(get_store)):
    try:
        deleted = await store.clear(ticket_id)
    except SQLAlchemyError as e:
        raise storage_error(e)
    return {"success": True, "deleted": deleted}


@router.get("/buffer-stats")
async def buffer_stats(store: MessageStore = Depends(get_store)):
    return store.buffer_stats()
