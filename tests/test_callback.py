from longhaul.authorization.callback import make_tool_authorizer
from longhaul.state import AuthorizationPolicy


def test_read_only_tools_always_allowed():
    can_use_tool = make_tool_authorizer(AuthorizationPolicy(preset="readonly"))
    for tool in ["Read", "Grep", "Glob", "read_file", "list_files", "grep"]:
        assert can_use_tool(tool, {"path": "src"}).allowed


def test_shell_tool_goes_through_policy():
    denied = []
    can_use_tool = make_tool_authorizer(
        AuthorizationPolicy(preset="dev"),
        on_denied=lambda command, reason: denied.append((command, reason)),
    )

    assert can_use_tool("bash", {"command": "ls -la"}).allowed
    decision = can_use_tool("Bash", {"command": "rm -rf /"})

    assert not decision.allowed
    assert denied == [("rm -rf /", decision.reason)]


def test_missing_command_is_treated_as_empty():
    can_use_tool = make_tool_authorizer(AuthorizationPolicy(preset="readonly"))
    assert can_use_tool("Bash", {}).allowed


def test_other_tools_fall_through():
    can_use_tool = make_tool_authorizer(AuthorizationPolicy(preset="readonly"))
    assert can_use_tool("write_file", {"path": "a.txt", "content": "x"}).allowed
