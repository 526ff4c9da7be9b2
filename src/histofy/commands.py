"""
命令处理模块

每个处理函数接收 HistofyContext 和已校验的选项，返回进程退出码
"""
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from rich.prompt import Confirm
from rich.table import Table

from .core.commit import create_batch_commits, create_commit, load_batch_entries, push_with_retry
from .core.context import HistofyContext
from .core.dry_run import DryRunManager
from .core.errors import CancellationError, CancelReason, HistofyError, MigrationError, NetworkError
from .core.executor import MigrationExecutor, MigrationOptions, MigrationResult
from .core.history import HistoryFilter, UndoBatchResult, UndoResult
from .core.models import CommitInfo, MigrationPlan, Operation
from .core.operation_manager import OperationManager, OperationResult
from .core.options import CommitOptions, MigrateOptions, UndoOptions

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def exit_code_for(result: OperationResult) -> int:
    if result.success:
        return EXIT_OK
    return EXIT_CANCELLED if result.cancelled else EXIT_FAILURE


def report_failure(ctx: HistofyContext, result: OperationResult) -> int:
    """输出失败信息并返回退出码"""
    console = ctx.console
    if result.cancelled:
        console.print(f"[yellow]操作已取消: {result.error}[/yellow]")
    else:
        console.print(f"[bold red]错误 ({result.error_type}):[/bold red] {result.error}")

    migration = getattr(result.error, "result", None)
    if isinstance(migration, MigrationResult):
        if migration.rolled_back:
            console.print("[green]已回滚到迁移前状态[/green]")
        elif migration.rollback_failed:
            console.print(
                f"[bold red]回滚失败！请手动执行: git reset --hard {migration.backup_branch or migration.original_head}[/bold red]"
            )
        if migration.backup_branch:
            console.print(f"备份分支: [cyan]{migration.backup_branch}[/cyan]")
    if result.restored:
        console.print("[dim]仓库已恢复到操作前的快照[/dim]")
    return exit_code_for(result)


def run_commit(ctx: HistofyContext, options: CommitOptions) -> int:
    if options.dry_run:
        DryRunManager.for_commit_operation(
            message=options.message,
            date=options.date,
            time=options.time,
            author=options.author,
            add_all=options.add_all,
            files=options.files,
            push=options.push,
        ).display_preview(ctx.console)
        return EXIT_OK

    manager = OperationManager(ctx)
    result = manager.execute(
        "commit",
        lambda operation_id: create_commit(ctx.git, options),
        command="commit",
        args={'message': options.message, 'date': options.date, 'time': options.time,
              'author': options.author, 'addAll': options.add_all},
        description=f"创建提交: {options.message}",
    )
    if not result.success:
        return report_failure(ctx, result)

    commit = result.result
    ctx.console.print(f"[green]✅ 已创建提交[/green] [cyan]{commit.commit_hash[:8]}[/cyan] {commit.message}")
    if commit.date:
        ctx.console.print(f"   日期: {commit.date}")

    if options.push:
        return _push(ctx, options.remote)
    return EXIT_OK


def _push(ctx: HistofyContext, remote: str, force_with_lease: bool = False) -> int:
    try:
        attempts = push_with_retry(
            ctx.git,
            remote=remote,
            force_with_lease=force_with_lease,
            retries=ctx.settings.push_retries,
            base_delay=ctx.settings.push_backoff,
        )
    except NetworkError as e:
        ctx.console.print(f"[red]推送失败: {e}[/red]")
        ctx.console.print("[yellow]提交已保留在本地，可稍后手动推送[/yellow]")
        return EXIT_FAILURE
    ctx.console.print(f"[green]已推送到 {remote}[/green]" + (f" (尝试 {attempts} 次)" if attempts > 1 else ""))
    return EXIT_OK


def run_batch(ctx: HistofyContext, file: Path, continue_on_error: bool = False, dry_run: bool = False) -> int:
    try:
        entries = load_batch_entries(file)
    except HistofyError as e:
        ctx.console.print(f"[bold red]错误:[/bold red] {e}")
        return EXIT_FAILURE

    if dry_run:
        DryRunManager.for_batch_operation(entries, continue_on_error).display_preview(ctx.console)
        return EXIT_OK

    manager = OperationManager(ctx)
    result = manager.execute(
        "batch",
        lambda operation_id: create_batch_commits(ctx.git, entries, continue_on_error=continue_on_error),
        command="batch",
        args={'file': str(file), 'count': len(entries), 'continueOnError': continue_on_error},
        description=f"批量创建 {len(entries)} 个提交",
    )
    if not result.success:
        return report_failure(ctx, result)

    batch = result.result
    ctx.console.print(f"[green]✅ 已创建 {len(batch.created)}/{batch.total} 个提交[/green]")
    for failure in batch.failed:
        ctx.console.print(f"  [red]第 {failure['index']} 条失败:[/red] {failure['error']}")
    return EXIT_OK if batch.success else EXIT_FAILURE


def render_plan(ctx: HistofyContext, plan: MigrationPlan) -> None:
    table = Table(title=f"迁移计划 ({plan.rev_range})")
    table.add_column("提交", style="cyan", no_wrap=True)
    table.add_column("原日期")
    table.add_column("新日期", style="green")
    table.add_column("提交信息", overflow="fold")
    for commit in plan.commits:
        table.add_row(
            commit.original_hash[:8],
            commit.original_date[:19].replace("T", " "),
            f"{commit.new_date} {commit.new_time}",
            commit.message.splitlines()[0] if commit.message else "",
        )
    ctx.console.print(table)
    for warning in plan.warnings:
        ctx.console.print(f"[yellow]⚠️  {warning}[/yellow]")


def _manual_conflict_handler(ctx: HistofyContext):
    def handler(commit: CommitInfo, files: List[str]) -> bool:
        ctx.console.print(f"[bold yellow]提交 {commit.hash[:8]} 出现冲突:[/bold yellow]")
        for path in files:
            ctx.console.print(f"  • {path}")
        ctx.console.print("请在另一个终端中解决冲突并 git add 相关文件")
        return Confirm.ask("冲突已解决，继续迁移？", default=False, console=ctx.console)
    return handler


def _migration_undo_data(result: MigrationResult) -> Dict[str, Any]:
    return {
        'backupBranch': result.backup_branch,
        'originalHead': result.original_head,
        'newHead': result.new_head,
        'commitMap': dict(result.commit_map),
    }


def run_migrate(ctx: HistofyContext, options: MigrateOptions, interactive: Optional[bool] = None) -> int:
    executor = MigrationExecutor(
        ctx.git,
        progress=lambda message, percent: logger.info(
            f"{message}" + (f" ({percent:.0f}%)" if percent is not None else "")
        ),
        backup_prefix=ctx.settings.backup_prefix,
    )

    if options.preview_only:
        try:
            plan = executor.plan(
                options.rev_range, options.to_date, options.spread, options.start_time, options.preserve_order
            )
        except HistofyError as e:
            ctx.console.print(f"[bold red]错误:[/bold red] {e}")
            return EXIT_FAILURE
        render_plan(ctx, plan)
        DryRunManager.for_migration_operation(plan, options.create_backup).display_preview(ctx.console)
        if not options.dry_run:
            ctx.console.print("[dim]使用 --execute 执行迁移[/dim]")
        return EXIT_OK

    if interactive is None:
        interactive = sys.stdin.isatty()

    def migrate(operation_id: str) -> MigrationResult:
        plan = executor.plan(
            options.rev_range, options.to_date, options.spread, options.start_time, options.preserve_order
        )
        render_plan(ctx, plan)
        migration = executor.execute(plan, MigrationOptions(
            auto_resolve=options.auto_resolve,
            create_backup=options.create_backup,
            rollback_on_failure=options.rollback_on_failure,
            operation_id=operation_id,
            conflict_handler=_manual_conflict_handler(ctx) if interactive else None,
        ))
        if migration.success:
            return migration
        if migration.cancelled:
            raise CancellationError(CancelReason.SIGNAL, migration.error or "迁移被中断")
        if migration.aborted and migration.conflicts_encountered and not migration.rolled_back:
            raise MigrationError(
                f"迁移因冲突放弃: {migration.error}", migration, restore_snapshot=options.rollback_on_failure
            )
        raise MigrationError(
            f"迁移失败: {migration.error}", migration, restore_snapshot=options.rollback_on_failure
        )

    manager = OperationManager(ctx)
    result = manager.execute(
        "migrate",
        migrate,
        command="migrate",
        args={'range': options.rev_range, 'toDate': options.to_date, 'spread': options.spread,
              'startTime': options.start_time, 'autoResolve': options.auto_resolve,
              'createBackup': options.create_backup, 'rollbackOnFailure': options.rollback_on_failure},
        description=f"迁移 {options.rev_range} 到 {options.to_date}",
        undoable=options.create_backup,
        undo_data_builder=_migration_undo_data,
    )
    if not result.success:
        return report_failure(ctx, result)

    migration = result.result
    ctx.console.print(f"[green]✅ 已迁移 {migration.migrated_count} 个提交[/green]")
    if migration.conflicts_encountered:
        ctx.console.print("[yellow]迁移过程中出现冲突，已按策略解决[/yellow]")
    for warning in migration.integrity_warnings:
        ctx.console.print(f"[yellow]⚠️  {warning}[/yellow]")
    if migration.backup_branch:
        ctx.console.print(f"备份分支: [cyan]{migration.backup_branch}[/cyan]")
    ctx.console.print(f"撤销: [cyan]histofy undo operation {result.operation_id}[/cyan]")
    return EXIT_OK


def run_config_set(ctx: HistofyContext, key: str, value: str, dry_run: bool = False) -> int:
    if dry_run:
        preview = DryRunManager.for_config_operation(key, value, config_file=str(ctx.settings.config_file))
        preview.display_preview(ctx.console)
        return EXIT_OK

    store = ctx.config_store
    undo: Dict[str, Any] = {}

    def update(operation_id: str) -> Dict[str, Any]:
        undo.update({'key': key, 'existed': store.has(key), 'previousValue': store.get(key)})
        store.set(key, value)
        return {'key': key, 'value': value}

    manager = OperationManager(ctx)
    result = manager.execute(
        "config",
        update,
        command="config set",
        args={'key': key},
        description=f"设置配置 {key}",
        undo_data_builder=lambda value: dict(undo),
    )
    if not result.success:
        return report_failure(ctx, result)
    ctx.console.print(f"[green]已设置[/green] {key} = {value}")
    return EXIT_OK


def run_config_get(ctx: HistofyContext, key: str) -> int:
    value = ctx.config_store.get(key)
    if value is None:
        ctx.console.print(f"[yellow]未设置: {key}[/yellow]")
        return EXIT_FAILURE
    ctx.console.print(f"{key} = {value}")
    return EXIT_OK


def render_undo_result(ctx: HistofyContext, result: UndoResult) -> None:
    prefix = "[预演] " if result.dry_run else ""
    if result.success:
        flag = " [yellow](强制)[/yellow]" if result.forced else ""
        ctx.console.print(f"{prefix}[green]↩️  {result.operation_id}[/green] ({result.type}): {result.action}{flag}")
    else:
        ctx.console.print(f"{prefix}[red]❌ {result.operation_id}[/red] ({result.type}): {result.error}")


def _confirm(ctx: HistofyContext, options: UndoOptions, question: str) -> bool:
    if options.yes or options.dry_run:
        return True
    return Confirm.ask(question, default=False, console=ctx.console)


def run_undo_last(ctx: HistofyContext, count: int, options: UndoOptions) -> int:
    if options.dry_run:
        candidates = ctx.history.get_history(HistoryFilter(limit=count, undoable_only=True))
        DryRunManager.for_undo_operation(candidates).display_preview(ctx.console)
        try:
            batch = ctx.history.undo_last(count, force=options.force, dry_run=True)
        except HistofyError as e:
            ctx.console.print(f"[bold red]错误:[/bold red] {e}")
            return EXIT_FAILURE
        for item in batch.results:
            render_undo_result(ctx, item)
        return EXIT_OK if batch.success else EXIT_FAILURE

    if not _confirm(ctx, options, f"确定撤销最近 {count} 个操作？"):
        ctx.console.print("[yellow]已取消[/yellow]")
        return EXIT_CANCELLED

    manager = OperationManager(ctx)
    result = manager.execute(
        "undo",
        lambda operation_id: ctx.history.undo_last(count, force=options.force),
        command="undo last",
        args={'count': count, 'force': options.force},
        description=f"撤销最近 {count} 个操作",
        undoable=False,
    )
    if not result.success:
        return report_failure(ctx, result)

    batch: UndoBatchResult = result.result
    for item in batch.results:
        render_undo_result(ctx, item)
    ctx.console.print(f"已撤销 {batch.undone_count}/{batch.requested} 个操作")
    return EXIT_OK if batch.success else EXIT_FAILURE


def run_undo_operation(ctx: HistofyContext, operation_id: str, options: UndoOptions) -> int:
    if options.dry_run:
        try:
            undo = ctx.history.undo_operation(operation_id, force=options.force, dry_run=True)
        except HistofyError as e:
            ctx.console.print(f"[bold red]错误:[/bold red] {e}")
            return EXIT_FAILURE
        op = ctx.history.get_operation(operation_id)
        DryRunManager.for_undo_operation([op]).display_preview(ctx.console)
        render_undo_result(ctx, undo)
        return EXIT_OK

    if not _confirm(ctx, options, f"确定撤销操作 {operation_id}？"):
        ctx.console.print("[yellow]已取消[/yellow]")
        return EXIT_CANCELLED

    manager = OperationManager(ctx)
    result = manager.execute(
        "undo",
        lambda op_id: ctx.history.undo_operation(operation_id, force=options.force),
        command="undo operation",
        args={'operationId': operation_id, 'force': options.force},
        description=f"撤销操作 {operation_id}",
        undoable=False,
    )
    if not result.success:
        return report_failure(ctx, result)
    render_undo_result(ctx, result.result)
    return EXIT_OK


def render_history(ctx: HistofyContext, operations: List[Operation]) -> None:
    if not operations:
        ctx.console.print("[yellow]没有历史记录[/yellow]")
        return
    table = Table(title="操作历史")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("时间", no_wrap=True)
    table.add_column("类型")
    table.add_column("状态")
    table.add_column("可撤销")
    table.add_column("描述", overflow="fold")
    status_styles = {'completed': 'green', 'failed': 'red', 'undone': 'dim', 'running': 'yellow'}
    for op in operations:
        style = status_styles.get(op.status.value, 'white')
        table.add_row(
            op.id,
            op.started_at[:19].replace("T", " "),
            op.type,
            f"[{style}]{op.status.value}[/{style}]",
            "✅" if op.undoable and op.status.value == "completed" else "—",
            op.description,
        )
    ctx.console.print(table)


def run_history(ctx: HistofyContext, limit: int = 20, op_type: Optional[str] = None, undoable_only: bool = False) -> int:
    manager = OperationManager(ctx)
    result = manager.execute(
        "history",
        lambda operation_id: ctx.history.get_history(
            HistoryFilter(limit=limit, type=op_type, undoable_only=undoable_only)
        ),
        command="undo history",
    )
    if not result.success:
        return report_failure(ctx, result)
    render_history(ctx, result.result)
    return EXIT_OK


def run_clear_history(
    ctx: HistofyContext,
    older_than_days: Optional[int] = None,
    op_type: Optional[str] = None,
    options: Optional[UndoOptions] = None,
) -> int:
    options = options or UndoOptions()
    if not _confirm(ctx, options, "确定清理历史记录？清理后无法再撤销这些操作"):
        ctx.console.print("[yellow]已取消[/yellow]")
        return EXIT_CANCELLED

    older_than = datetime.now() - timedelta(days=older_than_days) if older_than_days is not None else None
    try:
        removed, remaining = ctx.history.clear_history(older_than=older_than, op_type=op_type)
    except HistofyError as e:
        ctx.console.print(f"[bold red]错误:[/bold red] {e}")
        return EXIT_FAILURE
    ctx.console.print(f"已清理 {removed} 条历史记录，剩余 {remaining} 条")
    return EXIT_OK


def run_export_history(ctx: HistofyContext, file: Path, format: str = "json", op_type: Optional[str] = None) -> int:
    try:
        count = ctx.history.export_history(file, format=format, filter=HistoryFilter(type=op_type))
    except HistofyError as e:
        ctx.console.print(f"[bold red]错误:[/bold red] {e}")
        return EXIT_FAILURE
    ctx.console.print(f"[green]已导出 {count} 条历史记录到[/green] {file}")
    return EXIT_OK
