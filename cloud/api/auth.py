from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

ROLE_ADMIN = "admin"
ROLE_DEVICE = "device"

VALID_ROLES: set[str] = {ROLE_ADMIN, ROLE_DEVICE}


def _normalise_roles(roles_header: str | None) -> set[str]:
    if not roles_header:
        return set()
    roles: set[str] = set()
    for chunk in roles_header.split(","):
        role = chunk.strip().lower()
        if role:
            roles.add(role)
    return roles


@dataclass(slots=True)
class Principal:
    subject_id: str
    roles: set[str]

    def has_any(self, *required: str) -> bool:
        if not required:
            return True
        return any(role.lower() in self.roles for role in required)

    def require(self, *required: str) -> None:
        if self.has_any(*required):
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "insufficient_role",
                "required": sorted({role.lower() for role in required}),
                "granted": sorted(self.roles),
            },
        )

    def require_subject(self, subject_id: str) -> None:
        if subject_id == self.subject_id or ROLE_ADMIN in self.roles:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "subject_mismatch", "subject_id": subject_id},
        )


async def principal_dependency(
    subject: str = Header(..., alias="X-Subject-ID"),
    roles_header: str | None = Header(None, alias="X-Roles"),
) -> Principal:
    subject_id = str(subject).strip()
    if not subject_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_subject", "subject_id": subject},
        )
    roles = _normalise_roles(roles_header) or {ROLE_DEVICE}
    invalid = sorted(role for role in roles if role not in VALID_ROLES)
    if invalid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_role", "roles": invalid},
        )
    return Principal(subject_id=subject_id, roles=roles)


__all__ = ["Principal", "ROLE_ADMIN", "ROLE_DEVICE", "principal_dependency"]
