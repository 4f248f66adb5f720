"""Built-in actions available to every worker."""

from __future__ import annotations

from pathlib import Path

from scaffolder.actions.registry import Action, ActionContext, ActionSchema
from scaffolder.errors import InputError


def create_builtin_actions() -> list[Action]:
    return [
        Action(
            id="debug:log",
            handler=_debug_log,
            description="Writes a message into the step log, optionally listing the workspace.",
            schema=ActionSchema(
                input={
                    "type": "object",
                    "properties": {
                        "message": {"type": "string"},
                        "listWorkspace": {"type": "boolean"},
                    },
                },
            ),
        ),
        Action(
            id="fs:write",
            handler=_fs_write,
            description="Writes a text file inside the task workspace.",
            schema=ActionSchema(
                input={
                    "type": "object",
                    "required": ["path", "content"],
                    "properties": {
                        "path": {"type": "string", "minLength": 1},
                        "content": {"type": "string"},
                    },
                },
                output={
                    "type": "object",
                    "properties": {"path": {"type": "string"}},
                },
            ),
        ),
    ]


def _debug_log(ctx: ActionContext) -> None:
    message = ctx.input.get("message")
    if message:
        ctx.logger.info(message)
    if ctx.input.get("listWorkspace"):
        for path in sorted(ctx.workspace_path.rglob("*")):
            ctx.logger.info("  %s", path.relative_to(ctx.workspace_path).as_posix())


def _fs_write(ctx: ActionContext) -> None:
    target = _resolve_inside(ctx.workspace_path, ctx.input["path"])
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(ctx.input["content"], encoding="utf-8")
    ctx.logger.info("Wrote %s", target.relative_to(ctx.workspace_path).as_posix())
    ctx.output("path", target.relative_to(ctx.workspace_path).as_posix())


def _resolve_inside(root: Path, relative: str) -> Path:
    resolved_root = root.resolve()
    target = (resolved_root / relative).resolve()
    if not target.is_relative_to(resolved_root):
        raise InputError(
            "Relative path is not allowed to refer to a directory outside its parent: "
            f"{relative}",
        )
    return target
