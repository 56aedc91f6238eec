"""
Dependencias de autenticación para FastAPI.

Los tokens los emite el servicio de identidad de la plataforma; aquí solo se
validan y se extrae el contexto (usuario, clínica y rol).
"""
from typing import List
from uuid import UUID
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from app.modules.auth.schemas import AuthContext
from app.core.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer()


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No se pudieron validar las credenciales",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_auth_token(token: str) -> AuthContext:
    """
    Decodificar un JWT de la plataforma. Debe traer `sub` (usuario); la
    clínica viaja en `tenant_id` y el rol en `role`.
    """
    try:
        payload = jwt.decode(token, settings.APP_SECRET_STRING, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        raise _unauthorized()

    if payload.get("sub") is None:
        raise _unauthorized()

    tenant_id = payload.get("tenant_id")
    try:
        return AuthContext(
            user_id=UUID(str(payload["sub"])),
            tenant_id=UUID(str(tenant_id)) if tenant_id else None,
            user_role=payload.get("role"),
        )
    except ValueError:
        logger.warning("Token con identificadores inválidos")
        raise _unauthorized()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        return decode_auth_token(credentials.credentials)

    @staticmethod
    def require_role(allowed_roles: List[str]):
        """
        Exigir una clínica seleccionada y uno de los roles indicados.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)) -> AuthContext:
            if not auth_context.tenant_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Se requiere seleccionar una clínica"
                )

            if auth_context.user_role not in allowed_roles:
                logger.info(
                    f"Acceso denegado a {auth_context.user_id} en clínica {auth_context.tenant_id} "
                    f"(rol {auth_context.user_role})"
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(allowed_roles)}"
                )

            return auth_context
        return role_checker
