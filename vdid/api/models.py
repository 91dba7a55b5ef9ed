"""Request/response models for the VDID API.

Field names follow the camelCase wire contract through aliases; handlers
use the snake_case attributes.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Auth
# =============================================================================


class RegisterRequest(_CamelModel):
    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Password (min 8 chars, mixed classes)")
    display_name: Optional[str] = Field(None, alias="displayName", max_length=100)


class LoginRequest(_CamelModel):
    email: str
    password: str


class RefreshRequest(_CamelModel):
    refresh_token: Optional[str] = Field(
        None, alias="refreshToken", description="Falls back to the refreshToken cookie"
    )


class ChangePasswordRequest(_CamelModel):
    current_password: Optional[str] = Field(None, alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")


class ForgotPasswordRequest(_CamelModel):
    email: str


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., alias="newPassword")


# =============================================================================
# Wallet
# =============================================================================


class NonceRequest(_CamelModel):
    address: str
    chain_id: int = Field(1, alias="chainId")


class WalletVerifyRequest(_CamelModel):
    address: str
    signature: str
    message: str
    chain_id: int = Field(1, alias="chainId")
    ens_name: Optional[str] = Field(None, alias="ensName")


class WalletBindRequest(WalletVerifyRequest):
    label: Optional[str] = Field(None, max_length=100)


class WalletUnbindRequest(_CamelModel):
    address: str


class WalletLabelRequest(_CamelModel):
    label: Optional[str] = Field(None, max_length=100)


# =============================================================================
# Passkeys
# =============================================================================


class PasskeyRegisterVerifyRequest(_CamelModel):
    credential: dict[str, Any]
    device_name: Optional[str] = Field(None, alias="deviceName", max_length=100)


class PasskeyAuthOptionsRequest(_CamelModel):
    email: Optional[str] = None


class PasskeyAuthVerifyRequest(_CamelModel):
    credential: dict[str, Any]


class PasskeyRenameRequest(_CamelModel):
    device_name: str = Field(..., alias="deviceName")


# =============================================================================
# Operational
# =============================================================================


class HealthResponse(BaseModel):
    ok: bool
    database: bool


class VersionResponse(BaseModel):
    version: str
    environment: str
