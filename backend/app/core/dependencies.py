from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.storage import ObjectStore, get_object_store

DbSession = Annotated[Session, Depends(get_db)]
ObjectStoreDep = Annotated[ObjectStore, Depends(get_object_store)]
