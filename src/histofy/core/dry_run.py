"""
预演模块 - 在不执行任何 git 操作的情况下列出将要发生的操作

只累积操作、警告和受影响文件，绝不调用 GitPrimitives
"""
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import DryRunOperation, MigrationPlan, Operation

RISK_LEVELS = ("low", "medium", "high")

_RISK_STYLES = {'low': 'green', 'medium': 'yellow', 'high': 'red'}
_RISK_ICONS = {'low': '🟢', 'medium': '🟡', 'high': '🔴'}
_WARNING_STYLES = {'error': 'red', 'warning': 'yellow', 'info': 'blue'}
_WARNING_ICONS = {'error': '❌', 'warning': '⚠️', 'info': 'ℹ️'}


def format_duration(seconds: int) -> str:
    """将秒数格式化为 1h 2m / 3m 4s / 5s"""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        minutes, rest = divmod(seconds, 60)
        return f"{minutes}m {rest}s" if rest else f"{minutes}m"
    hours, rest = divmod(seconds, 3600)
    minutes = rest // 60
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def _short_message(message: str, limit: int = 50) -> str:
    first_line = message.splitlines()[0] if message else ""
    return first_line if len(first_line) <= limit else first_line[:limit] + "..."


class DryRunManager:
    """预演管理器"""

    def __init__(self):
        self.operations: List[DryRunOperation] = []
        self.warnings: List[Dict[str, str]] = []
        self.estimated_time = 0
        self.affected_files: List[str] = []
        self.git_operations: List[Dict[str, Any]] = []

    def add_operation(
        self,
        type: str,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        estimated_duration: int = 0,
        risk_level: str = "low",
        reversible: bool = True,
        git_command: Optional[str] = None,
        git_args: Optional[List[str]] = None,
        affected_files: Optional[Iterable[str]] = None,
    ) -> int:
        """
        添加一个预演操作

        返回:
            int: 操作序号（从 1 开始）
        """
        if risk_level not in RISK_LEVELS:
            raise ValueError(f"未知风险等级: {risk_level}")

        files = set(affected_files or [])
        op = DryRunOperation(
            id=len(self.operations) + 1,
            type=type,
            description=description,
            details={k: str(v) for k, v in (details or {}).items()},
            estimated_duration=int(estimated_duration),
            risk_level=risk_level,
            reversible=reversible,
            git_command=git_command,
            git_args=list(git_args or []),
            affected_files=files,
        )
        self.operations.append(op)
        self.estimated_time += op.estimated_duration

        # 保持首次出现的顺序
        for path in sorted(files):
            if path not in self.affected_files:
                self.affected_files.append(path)

        if git_command:
            self.git_operations.append({
                'command': git_command,
                'args': list(git_args or []),
                'description': description,
            })
        return op.id

    def add_warning(self, message: str, severity: str = "warning") -> None:
        self.warnings.append({
            'message': message,
            'severity': severity,
            'timestamp': datetime.now().isoformat(),
        })

    def generate_summary(self) -> Dict[str, Any]:
        """汇总当前累积的状态（纯投影，不修改状态）"""
        risk_distribution = {level: 0 for level in RISK_LEVELS}
        for op in self.operations:
            risk_distribution[op.risk_level] += 1

        reversible = sum(1 for op in self.operations if op.reversible)
        return {
            'totalOperations': len(self.operations),
            'estimatedTime': self.estimated_time,
            'affectedFilesCount': len(self.affected_files),
            'gitOperationsCount': len(self.git_operations),
            'riskDistribution': risk_distribution,
            'reversibleOperations': reversible,
            'irreversibleOperations': len(self.operations) - reversible,
            'warningsCount': len(self.warnings),
            'operations': [op.to_dict() for op in self.operations],
            'warnings': [dict(w) for w in self.warnings],
            'affectedFiles': list(self.affected_files),
            'gitOperations': [
                {'command': g['command'], 'args': list(g['args']), 'description': g['description']}
                for g in self.git_operations
            ],
        }

    def display_preview(
        self,
        console: Optional[Console] = None,
        show_details: bool = True,
        show_warnings: bool = True,
        show_git_commands: bool = False,
        max_operations: int = 20,
    ) -> Dict[str, Any]:
        """
        用 Rich 显示预演结果

        返回:
            与 generate_summary() 相同的汇总
        """
        console = console or Console()
        summary = self.generate_summary()

        stats = Text()
        stats.append("操作总数: ", style="bold")
        stats.append(f"{summary['totalOperations']}\n", style="yellow")
        stats.append("预计耗时: ", style="bold")
        stats.append(f"{format_duration(summary['estimatedTime'])}\n", style="yellow")
        stats.append("受影响文件: ", style="bold")
        stats.append(f"{summary['affectedFilesCount']}\n", style="yellow")
        stats.append("Git 操作: ", style="bold")
        stats.append(f"{summary['gitOperationsCount']}", style="yellow")
        for level, count in summary['riskDistribution'].items():
            if count:
                stats.append(f"\n{level.upper()}: ", style=_RISK_STYLES[level])
                stats.append(f"{count} 个操作")
        console.print(Panel.fit(stats, title="[bold cyan]🔍 预演 (DRY RUN)[/bold cyan]", border_style="cyan"))

        if summary['irreversibleOperations']:
            console.print(f"[red]⚠️  {summary['irreversibleOperations']} 个操作不可逆！[/red]")

        if show_details and self.operations:
            table = Table(title="计划操作")
            table.add_column("#", style="cyan", no_wrap=True)
            table.add_column("风险", no_wrap=True)
            table.add_column("可逆", no_wrap=True)
            table.add_column("描述", overflow="fold")
            for op in self.operations[:max_operations]:
                detail_lines = "\n".join(f"[dim]{k}: {v}[/dim]" for k, v in op.details.items())
                description = op.description + (f"\n{detail_lines}" if detail_lines else "")
                table.add_row(str(op.id), _RISK_ICONS[op.risk_level], "↩️" if op.reversible else "⚠️", description)
            console.print(table)
            if len(self.operations) > max_operations:
                console.print(f"[dim]... 还有 {len(self.operations) - max_operations} 个操作[/dim]")

        if show_git_commands and self.git_operations:
            console.print("[bold]将执行的 Git 命令:[/bold]")
            for index, git_op in enumerate(self.git_operations, 1):
                command = f"git {git_op['command']} {' '.join(git_op['args'])}".strip()
                console.print(f"  {index}. [cyan]{command}[/cyan]")

        if show_warnings and self.warnings:
            console.print("[bold]警告与建议:[/bold]")
            for index, warning in enumerate(self.warnings, 1):
                style = _WARNING_STYLES.get(warning['severity'], 'white')
                icon = _WARNING_ICONS.get(warning['severity'], '💡')
                console.print(f"  {index}. {icon} [{style}]{warning['message']}[/{style}]")

        if 0 < summary['affectedFilesCount'] <= 10:
            console.print("[bold]受影响文件:[/bold]")
            for path in self.affected_files:
                console.print(f"  📄 {path}")
        elif summary['affectedFilesCount'] > 10:
            console.print(f"[bold]受影响文件:[/bold] {summary['affectedFilesCount']} 个（过多不逐一列出）")

        console.print("[dim]💡 这只是预览，没有做任何修改。去掉 --dry-run 以真正执行。[/dim]")
        return summary

    def clear(self) -> None:
        self.operations = []
        self.warnings = []
        self.estimated_time = 0
        self.affected_files = []
        self.git_operations = []

    def export_summary(self, file_path: Path) -> Dict[str, Any]:
        """导出汇总为 JSON 文件"""
        data = self.generate_summary()
        data['exportedAt'] = datetime.now().isoformat()
        data['version'] = "1.0.0"

        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        logger.info(f"预演结果已导出: {file_path}")
        return data

    @classmethod
    def for_commit_operation(
        cls,
        message: str,
        date: Optional[str] = None,
        time: Optional[str] = None,
        author: Optional[str] = None,
        add_all: bool = False,
        files: Optional[List[str]] = None,
        push: bool = False,
    ) -> "DryRunManager":
        dry_run = cls()
        dry_run.add_operation(
            type="git_add",
            description="暂存待提交的文件",
            details={
                'files': ", ".join(files) if files else "全部改动",
                'mode': "all" if add_all else "selective",
            },
            estimated_duration=2,
            git_command="add",
            git_args=["-A"] if add_all else list(files or []),
            affected_files=files,
        )
        dry_run.add_operation(
            type="git_commit",
            description=f'创建提交: "{message}"',
            details={
                'message': message,
                'date': date or "current",
                'time': time or "current",
                'author': author or "default",
            },
            estimated_duration=3,
            git_command="commit",
            git_args=["-m", message],
        )
        if push:
            dry_run.add_operation(
                type="git_push",
                description="推送提交到远程仓库",
                estimated_duration=5,
                risk_level="medium",
                reversible=False,
                git_command="push",
            )
            dry_run.add_warning("推送操作无法自动撤销", "warning")
        return dry_run

    @classmethod
    def for_migration_operation(cls, plan: MigrationPlan, create_backup: bool = True) -> "DryRunManager":
        dry_run = cls()
        if create_backup:
            dry_run.add_operation(
                type="git_backup",
                description="创建当前分支的备份分支",
                estimated_duration=10,
                git_command="branch",
            )

        for commit in plan.commits:
            dry_run.add_operation(
                type="commit_migration",
                description=f"迁移提交 {commit.original_hash[:8]}: {_short_message(commit.message)}",
                details={
                    'originalDate': commit.original_date,
                    'newDate': f"{commit.new_date} {commit.new_time}",
                    'hash': commit.original_hash,
                    'strategy': plan.strategy,
                },
                estimated_duration=15,
                risk_level="high",
                reversible=True,
                git_command="rebase",
                git_args=["--interactive"],
            )

        dry_run.add_operation(
            type="cleanup",
            description="清理临时状态并校验提交内容",
            estimated_duration=5,
        )

        dry_run.add_warning("迁移会改写 Git 历史", "warning")
        if create_backup:
            dry_run.add_warning("会自动创建备份分支", "info")
        else:
            dry_run.add_warning("已关闭备份，失败时只能回退到原 HEAD", "warning")
        if len(plan.commits) > 10:
            dry_run.add_warning("大规模迁移可能耗时较长", "warning")
        for warning in plan.warnings:
            dry_run.add_warning(warning, "info")
        return dry_run

    @classmethod
    def for_config_operation(cls, key: str, value: str, config_file: str = "~/.histofy/config.yaml") -> "DryRunManager":
        dry_run = cls()
        dry_run.add_operation(
            type="config_update",
            description=f"设置配置: {key} = {value}",
            details={'key': key, 'value': value},
            estimated_duration=2,
            affected_files=[config_file],
        )
        return dry_run

    @classmethod
    def for_batch_operation(cls, commits: List[Dict[str, Any]], continue_on_error: bool = False) -> "DryRunManager":
        dry_run = cls()
        if not commits:
            return dry_run

        dry_run.add_operation(
            type="data_validation",
            description=f"校验 {len(commits)} 条提交数据",
            estimated_duration=-(-len(commits) // 10),
        )
        for index, commit in enumerate(commits, 1):
            message = commit.get('message', '')
            dry_run.add_operation(
                type="batch_commit",
                description=f"创建提交 {index}/{len(commits)}: {message}",
                details={
                    'message': message,
                    'date': commit.get('date') or "current",
                    'time': commit.get('time') or "current",
                    'author': commit.get('author') or "default",
                },
                estimated_duration=3,
                git_command="commit",
                git_args=["-m", message],
            )
        if len(commits) > 50:
            dry_run.add_warning("大批量操作可能耗时较长", "warning")
        if continue_on_error:
            dry_run.add_warning("单个提交失败时会继续处理后续提交", "info")
        return dry_run

    @classmethod
    def for_undo_operation(cls, operations: List[Operation]) -> "DryRunManager":
        dry_run = cls()
        for op in operations:
            if op.type == "migrate":
                target = op.backup_branch or "备份分支"
                dry_run.add_operation(
                    type="undo_migration",
                    description=f"撤销迁移 {op.id}: 重置到 {target}",
                    details={'operation': op.description, 'backupBranch': target},
                    estimated_duration=5,
                    risk_level="high",
                    reversible=False,
                    git_command="reset",
                    git_args=["--hard", target],
                )
            elif op.type in ("commit", "batch"):
                target = op.undo_data.get('parentHash') or "HEAD~1"
                dry_run.add_operation(
                    type=f"undo_{op.type}",
                    description=f"撤销提交操作 {op.id}: 重置到 {target[:8]}",
                    details={'operation': op.description},
                    estimated_duration=2,
                    risk_level="high",
                    reversible=False,
                    git_command="reset",
                    git_args=["--hard", target],
                )
            else:
                dry_run.add_operation(
                    type=f"undo_{op.type}",
                    description=f"撤销 {op.type} 操作 {op.id}",
                    details={'operation': op.description},
                    estimated_duration=1,
                    risk_level="medium",
                )
        if operations:
            dry_run.add_warning("撤销会丢弃被撤销操作之后的工作区改动", "warning")
        return dry_run
