"""
Entorno de pruebas.

Se fija antes de importar `app`: la configuración se lee al importar
`app.core.config` y `app.main` crea tablas en desarrollo.
"""
import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SUBSCRIPTION_EVENTS_ASYNC"] = "false"
