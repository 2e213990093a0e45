"""
Pydantic schemas for organization usage.
"""
from pydantic import BaseModel, Field


class OrganizationUsage(BaseModel):
    """Uso actual de recursos de una organización."""
    gyms: int = Field(0, ge=0, description="Gimnasios no eliminados")
    clients: int = Field(0, ge=0, description="Clientes en todos los gimnasios")
    collaborators: int = Field(0, ge=0, description="Colaboradores activos en todos los gimnasios")
