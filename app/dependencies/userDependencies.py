from typing import Annotated, Optional
from uuid import UUID
from fastapi import Depends, Header


def get_actor_id(x_user_id: Optional[UUID] = Header(None, alias="X-User-Id")) -> Optional[UUID]:
    """
    Usuario que ejecuta la operación.

    La autenticación vive fuera del core de facturación; el gateway propaga
    el usuario autenticado en la cabecera X-User-Id.
    """
    return x_user_id


actor_dependency = Annotated[Optional[UUID], Depends(get_actor_id)]
