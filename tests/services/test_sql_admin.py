import subprocess

from sqlci.models import ContainerHandle, Credential, PortMapping
from sqlci.services.sql_admin import (
    AdminCommandResult,
    SqlAdminService,
    quote_identifier,
    quote_literal,
)


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


class FakeRuntime:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.calls = []

    def exec(self, handle, command, secrets=(), timeout=None):
        self.calls.append({"handle": handle, "command": command, "secrets": secrets, "timeout": timeout})
        return subprocess.CompletedProcess(command, self.returncode, stdout=self.stdout, stderr=self.stderr)


def _handle():
    return ContainerHandle(name="sqlci_abc", container_id="id", image="img", ports=PortMapping())


ADMIN = Credential("sa", "Adm1n!secret")


def test_quoting_escapes_closing_brackets_and_quotes():
    assert quote_identifier("odd]name") == "[odd]]name]"
    assert quote_literal("it's") == "N'it''s'"


def test_create_login_statement_grants_role():
    statement = SqlAdminService.create_login_statement(Credential("ci_user", "p'w"), "sysadmin")

    assert statement == (
        "CREATE LOGIN [ci_user] WITH PASSWORD = N'p''w', CHECK_POLICY = OFF; "
        "ALTER SERVER ROLE [sysadmin] ADD MEMBER [ci_user];"
    )


def test_build_sqlcmd_adds_trust_flag_and_fails_on_errors():
    service = SqlAdminService(
        runtime=FakeRuntime(),
        logger=DummyLogger(),
        sqlcmd_path="/opt/mssql-tools18/bin/sqlcmd",
        trust_server_certificate=True,
    )

    cmd = service.build_sqlcmd(ADMIN, "SELECT 1")

    assert cmd[0] == "/opt/mssql-tools18/bin/sqlcmd"
    assert "-b" in cmd
    assert "-C" in cmd
    assert cmd[-2:] == ["-Q", "SELECT 1"]


def test_execute_masks_passwords_in_output_and_forwards_secrets():
    runtime = FakeRuntime(
        returncode=1,
        stderr="Sqlcmd: Error: Login failed for user 'sa' with password Adm1n!secret.",
    )
    service = SqlAdminService(runtime=runtime, logger=DummyLogger(), timeout=30)

    result = service.execute(_handle(), ADMIN, "SELECT 1")

    assert not result.ok
    assert "Adm1n!secret" not in result.output
    assert "Login failed" in result.reason
    assert runtime.calls[0]["secrets"] == ("Adm1n!secret",)
    assert runtime.calls[0]["timeout"] == 30


def test_create_login_masks_new_password_too():
    runtime = FakeRuntime()
    service = SqlAdminService(runtime=runtime, logger=DummyLogger())

    result = service.create_login(_handle(), ADMIN, Credential("ci_user", "Us3r!secret"), "sysadmin")

    assert result.ok
    assert runtime.calls[0]["secrets"] == ("Adm1n!secret", "Us3r!secret")


def test_reason_falls_back_to_exit_status():
    assert AdminCommandResult(returncode=4).reason == "sqlcmd exited with status 4"
    assert AdminCommandResult(returncode=1, output="first\n\nlast line\n").reason == "last line"
