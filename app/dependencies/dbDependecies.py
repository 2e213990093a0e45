from fastapi import Depends
from sqlalchemy.orm import Session
from typing import Annotated
from app.database.database import get_db

# Synchronous database dependency; billing transitions run on a sync Session
db_dependency = Annotated[Session, Depends(get_db)]
