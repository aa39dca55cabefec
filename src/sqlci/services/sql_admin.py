"""SQL Server administrative command service for SQLCI."""

from dataclasses import dataclass
from typing import List, Optional

from sqlci.models import ContainerHandle, Credential
from sqlci.services.command_runner import mask_command


def quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def quote_literal(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class AdminCommandResult:
    """Outcome of one statement run through sqlcmd."""

    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def reason(self) -> str:
        lines = [line.strip() for line in self.output.splitlines() if line.strip()]
        if lines:
            return lines[-1]
        return f"sqlcmd exited with status {self.returncode}"


class SqlAdminService:
    """Runs T-SQL statements inside a container with sqlcmd."""

    def __init__(
        self,
        runtime,
        logger,
        sqlcmd_path: str = "sqlcmd",
        trust_server_certificate: bool = False,
        timeout: Optional[float] = None,
    ):
        self.runtime = runtime
        self.logger = logger
        self.sqlcmd_path = sqlcmd_path
        self.trust_server_certificate = trust_server_certificate
        self.timeout = timeout

    def build_sqlcmd(self, credential: Credential, statement: str) -> List[str]:
        cmd = [
            self.sqlcmd_path,
            "-S",
            "localhost",
            "-U",
            credential.login,
            "-P",
            credential.password,
            "-b",
        ]
        if self.trust_server_certificate:
            cmd.append("-C")
        cmd += ["-Q", statement]
        return cmd

    @staticmethod
    def create_login_statement(credential: Credential, role: str) -> str:
        login = quote_identifier(credential.login)
        return (
            f"CREATE LOGIN {login} WITH PASSWORD = {quote_literal(credential.password)}, "
            f"CHECK_POLICY = OFF; "
            f"ALTER SERVER ROLE {quote_identifier(role)} ADD MEMBER {login};"
        )

    def execute(
        self,
        handle: ContainerHandle,
        credential: Credential,
        statement: str,
        secrets=(),
    ) -> AdminCommandResult:
        cmd = self.build_sqlcmd(credential, statement)
        result = self.runtime.exec(
            handle,
            cmd,
            secrets=(credential.password,) + tuple(secrets),
            timeout=self.timeout,
        )
        output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part)
        output = mask_command([output], (credential.password,) + tuple(secrets))
        return AdminCommandResult(returncode=result.returncode, output=output)

    def create_login(
        self,
        handle: ContainerHandle,
        admin: Credential,
        new_credential: Credential,
        role: str,
    ) -> AdminCommandResult:
        self.logger.debug("Creating login %s with role %s.", new_credential.login, role)
        return self.execute(
            handle,
            admin,
            self.create_login_statement(new_credential, role),
            secrets=(new_credential.password,),
        )
