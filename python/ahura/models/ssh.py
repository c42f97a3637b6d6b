# models/ssh.py

from pydantic import AliasChoices, BaseModel, Field, SecretStr, field_validator
from typing import Literal, Union
from typing_extensions import Annotated


class PasswordAuth(BaseModel):
    """
    Log in with a password. The same password is used for `sudo -S`
    escalation unless the user is root.
    """

    method: Literal["password"] = "password"
    user: str
    password: SecretStr

    @field_validator("user")
    @classmethod
    def validate_user(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("user must be a non-empty string")
        return val

    @field_validator("password")
    @classmethod
    def validate_password(cls, val: SecretStr) -> SecretStr:
        if not val.get_secret_value():
            raise ValueError("password must be a non-empty string")
        return val

    @property
    def is_root(self) -> bool:
        return self.user == "root"


class KeyAuth(BaseModel):
    """
    Log in with a private key file already present on the provisioner host.
    Escalation uses passwordless `sudo -n` unless the user is root.
    """

    method: Literal["key"] = "key"
    user: str
    private_key_path: str = Field(
        validation_alias=AliasChoices("private_key_path", "key_path", "keyPath")
    )

    @field_validator("user", "private_key_path")
    @classmethod
    def validate_non_empty(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("must be a non-empty string")
        return val

    @property
    def is_root(self) -> bool:
        return self.user == "root"


AuthCredential = Annotated[
    Union[PasswordAuth, KeyAuth], Field(discriminator="method")
]


class RemoteOutput(BaseModel):
    """Captured output of a completed remote command."""

    stdout: str = ""
    stderr: str = ""
