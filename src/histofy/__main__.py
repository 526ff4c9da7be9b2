"""
histofy 的命令行入口点，使用 Typer 实现命令行界面
"""
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console

from . import commands
from .config import Settings
from .core.context import HistofyContext
from .core.errors import HistofyError
from .core.options import CommitOptions, MigrateOptions, UndoOptions


def setup_logger(app_name="histofy", log_root=None, console_output=True, verbose=False):
    """配置 Loguru 日志系统

    Args:
        app_name: 应用名称，用于日志目录
        log_root: 日志根目录，默认为 ~/.histofy/logs
        console_output: 是否输出到控制台
        verbose: 控制台是否输出 INFO 级别日志

    Returns:
        tuple: (logger, config_info)
    """
    if log_root is None:
        log_root = Settings.load().log_dir

    # 清除默认处理器
    logger.remove()

    if console_output:
        logger.add(
            sys.stderr,
            level="INFO" if verbose else "WARNING",
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level.icon} {level: <8}</level> | <level>{message}</level>"
        )

    current_time = datetime.now()
    log_dir = Path(log_root) / app_name / current_time.strftime("%Y-%m-%d") / current_time.strftime("%H")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{current_time.strftime('%M%S')}.log"

    logger.add(
        str(log_file),
        level="DEBUG",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {elapsed} | {level.icon} {level: <8} | {name}:{function}:{line} - {message}",
        enqueue=True,
    )

    config_info = {
        'log_file': str(log_file),
    }
    logger.debug(f"日志系统已初始化，应用名称: {app_name}")
    return logger, config_info


app = typer.Typer(help="histofy - 指定日期提交与提交日期迁移工具", no_args_is_help=True)
undo_app = typer.Typer(help="撤销操作与管理操作历史", no_args_is_help=True)
config_app = typer.Typer(help="读取和修改 histofy 配置", no_args_is_help=True)
app.add_typer(undo_app, name="undo")
app.add_typer(config_app, name="config")


def _context(ctx: typer.Context) -> HistofyContext:
    return ctx.obj


def _finish(code: int) -> None:
    if code:
        raise typer.Exit(code=code)


@app.callback()
def main(
    ctx: typer.Context,
    repo: Optional[Path] = typer.Option(None, "--repo", "-C", help="仓库路径，默认为当前目录"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出详细日志"),
):
    """指定日期提交、迁移提交日期，所有写操作都可撤销"""
    settings = Settings.load()
    setup_logger(app_name="histofy", log_root=settings.log_dir, verbose=verbose)
    ctx.obj = HistofyContext.create(repo_path=repo, settings=settings, console=Console())


@app.command()
def commit(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="提交信息"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="提交日期 (YYYY-MM-DD)"),
    time: Optional[str] = typer.Option(None, "--time", "-t", help="提交时间 (HH:MM)"),
    add_all: bool = typer.Option(False, "--add-all", "-a", help="提交前暂存所有改动"),
    author: Optional[str] = typer.Option(None, "--author", help="作者 'Name <email>'"),
    push: bool = typer.Option(False, "--push", help="提交后推送到远程仓库"),
    remote: str = typer.Option("origin", "--remote", help="推送的远程仓库"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只预览，不执行"),
):
    """创建指定日期的提交"""
    context = _context(ctx)
    store = context.config_store
    try:
        options = CommitOptions(
            message=message,
            date=date,
            time=time or (store.get("git.defaultTime") if date and store else None),
            author=author or (store.get("git.defaultAuthor") if store else None),
            add_all=add_all,
            push=push,
            dry_run=dry_run,
            remote=remote,
        )
    except HistofyError as e:
        context.console.print(f"[bold red]错误:[/bold red] {e}")
        raise typer.Exit(code=commands.EXIT_FAILURE)
    _finish(commands.run_commit(context, options))


@app.command()
def batch(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="JSON 或 CSV 格式的提交列表"),
    continue_on_error: bool = typer.Option(False, "--continue-on-error", help="单个提交失败时继续"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只预览，不执行"),
):
    """批量创建指定日期的提交"""
    _finish(commands.run_batch(_context(ctx), file, continue_on_error=continue_on_error, dry_run=dry_run))


@app.command()
def migrate(
    ctx: typer.Context,
    commit_range: str = typer.Argument(..., help="提交范围，例如 HEAD~3..HEAD"),
    to_date: str = typer.Option(..., "--to-date", help="目标日期 (YYYY-MM-DD)"),
    spread: int = typer.Option(1, "--spread", help="分散到多少天"),
    start_time: str = typer.Option("09:00", "--start-time", help="每天第一个提交的时间 (HH:MM)"),
    execute: bool = typer.Option(False, "--execute", help="真正执行迁移（默认只预览）"),
    auto_resolve: Optional[str] = typer.Option(None, "--auto-resolve", help="冲突自动解决策略: theirs / ours"),
    no_backup: bool = typer.Option(False, "--no-backup", help="不创建备份分支"),
    no_rollback: bool = typer.Option(False, "--no-rollback", help="失败时不回滚"),
    no_preserve_order: bool = typer.Option(False, "--no-preserve-order", help="不保持原始顺序（暂按原顺序处理）"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只预览，不执行"),
):
    """将一段提交的日期迁移到指定日期"""
    context = _context(ctx)
    try:
        options = MigrateOptions(
            rev_range=commit_range,
            to_date=to_date,
            spread=spread,
            start_time=start_time,
            execute=execute,
            dry_run=dry_run,
            auto_resolve=auto_resolve,
            create_backup=not no_backup,
            rollback_on_failure=not no_rollback,
            preserve_order=not no_preserve_order,
        )
    except HistofyError as e:
        context.console.print(f"[bold red]错误:[/bold red] {e}")
        raise typer.Exit(code=commands.EXIT_FAILURE)
    _finish(commands.run_migrate(context, options))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="点分配置键，例如 git.defaultAuthor"),
    value: str = typer.Argument(..., help="配置值"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只预览，不执行"),
):
    """设置配置项"""
    _finish(commands.run_config_set(_context(ctx), key, value, dry_run=dry_run))


@config_app.command("get")
def config_get(ctx: typer.Context, key: str = typer.Argument(..., help="点分配置键")):
    """读取配置项"""
    _finish(commands.run_config_get(_context(ctx), key))


@undo_app.command("last")
def undo_last(
    ctx: typer.Context,
    count: int = typer.Argument(1, help="撤销最近几个操作"),
    force: bool = typer.Option(False, "--force", help="安全检查失败时仍然撤销"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只检查，不执行"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
):
    """撤销最近的操作"""
    options = UndoOptions(force=force, dry_run=dry_run, yes=yes)
    _finish(commands.run_undo_last(_context(ctx), count, options))


@undo_app.command("operation")
def undo_operation(
    ctx: typer.Context,
    operation_id: str = typer.Argument(..., help="操作 ID"),
    force: bool = typer.Option(False, "--force", help="安全检查失败时仍然撤销"),
    dry_run: bool = typer.Option(False, "--dry-run", help="只检查，不执行"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
):
    """撤销指定操作"""
    options = UndoOptions(force=force, dry_run=dry_run, yes=yes)
    _finish(commands.run_undo_operation(_context(ctx), operation_id, options))


@undo_app.command("history")
def undo_history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="最多显示条数"),
    op_type: Optional[str] = typer.Option(None, "--type", help="只显示指定类型"),
    undoable_only: bool = typer.Option(False, "--undoable", help="只显示可撤销的操作"),
):
    """显示操作历史"""
    _finish(commands.run_history(_context(ctx), limit=limit, op_type=op_type, undoable_only=undoable_only))


@undo_app.command("clear")
def undo_clear(
    ctx: typer.Context,
    older_than: Optional[int] = typer.Option(None, "--older-than", help="只清理早于 N 天的记录"),
    op_type: Optional[str] = typer.Option(None, "--type", help="只清理指定类型"),
    yes: bool = typer.Option(False, "--yes", "-y", help="跳过确认"),
):
    """清理操作历史"""
    _finish(commands.run_clear_history(
        _context(ctx), older_than_days=older_than, op_type=op_type, options=UndoOptions(yes=yes)
    ))


@undo_app.command("export")
def undo_export(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="导出文件路径"),
    format: str = typer.Option("json", "--format", "-f", help="导出格式: json / csv"),
    op_type: Optional[str] = typer.Option(None, "--type", help="只导出指定类型"),
):
    """导出操作历史"""
    _finish(commands.run_export_history(_context(ctx), file, format=format, op_type=op_type))


if __name__ == "__main__":
    app()
