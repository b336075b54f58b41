from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from mini_crm.db.session import get_db

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/ping")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/db")
def db_check(db: Session = Depends(get_db)) -> dict[str, str]:
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
