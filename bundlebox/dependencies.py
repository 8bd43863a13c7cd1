from fastapi import Depends, Request
from sqlalchemy.orm import Session

from bundlebox.database import get_db
from bundlebox.services.assembler import ArchiveAssembler
from bundlebox.services.audit import AuditTrail
from bundlebox.services.gateway import AccessGateway
from bundlebox.services.scanner import ScanGate


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_audit(request: Request, db: Session = Depends(get_db)) -> AuditTrail:
    return AuditTrail(db, ip_address=client_ip(request))


def get_assembler(
    request: Request,
    db: Session = Depends(get_db),
    audit: AuditTrail = Depends(get_audit),
) -> ArchiveAssembler:
    state = request.app.state
    scan_gate = ScanGate(state.scanner, audit=audit, enabled=state.settings.enable_virus_scan)
    return ArchiveAssembler(
        db,
        blob_store=state.blob_store,
        token_cache=state.token_cache,
        scan_gate=scan_gate,
        cipher=state.cipher,
        audit=audit,
        settings=state.settings,
    )


def get_gateway(
    request: Request,
    db: Session = Depends(get_db),
    audit: AuditTrail = Depends(get_audit),
) -> AccessGateway:
    state = request.app.state
    return AccessGateway(
        db,
        blob_store=state.blob_store,
        token_cache=state.token_cache,
        cipher=state.cipher,
        audit=audit,
        cache_ttl=state.settings.cache_ttl_seconds,
    )
