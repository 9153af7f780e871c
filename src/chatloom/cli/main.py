import asyncio
from typing import List, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .. import __version__
from ..branching import TreeNode
from ..config import Config
from ..engine import ConversationEngine
from ..errors import ChatloomError
from ..store import init_db
from ..utils.logger import logger


# 全局变量
console = Console()
app = typer.Typer(name="chatloom", help="chatloom - 分支对话状态引擎")


def _load_config(database_url: Optional[str], model: Optional[str] = None) -> Config:
    overrides = {}
    if database_url:
        overrides["database_url"] = database_url
    if model:
        overrides["model"] = model
    config = Config(**overrides)
    logger.set_console_level(config.log_level)
    return config


def _engine(database_url: Optional[str], model: Optional[str] = None) -> ConversationEngine:
    return ConversationEngine(_load_config(database_url, model))


def _fail(error: ChatloomError) -> None:
    console.print(f"[red]{error.code}: {error.message}[/red]")
    raise typer.Exit(code=1)


def _render_tree(nodes: List[TreeNode], parent: Tree) -> None:
    for node in nodes:
        marker = "[green]●[/green]" if node.is_active else "[dim]○[/dim]"
        preview = node.content if len(node.content) <= 40 else node.content[:40] + "…"
        label = Text.from_markup(f"{marker} #{node.turn_id} [cyan]{node.role}[/cyan] [yellow]{node.branch_tag}[/yellow] ")
        label.append(preview)
        branch = parent.add(label)
        _render_tree(node.children, branch)


DB_OPTION = typer.Option(None, "--db", help="数据库连接串，默认读取配置")


@app.command("init-db")
def init_db_command(database_url: Optional[str] = DB_OPTION):
    """创建数据表"""
    config = _load_config(database_url)
    init_db(config.database_url).dispose()
    console.print(f"[green]数据库已初始化: {config.database_url}[/green]")


@app.command()
def chat(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    persona: str = typer.Option("Assistant", "--persona", "-p", help="角色名称"),
    system_prompt: Optional[str] = typer.Option(None, "--system", "-s", help="系统提示词"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="AI模型名称"),
    database_url: Optional[str] = DB_OPTION,
):
    """进入交互式聊天

    /branches 列出分支，/fork <turn_id> [tag] 分叉，/switch <tag> 切换，
    /regen 重新生成最后一条回复，/exit 退出
    """
    engine = _engine(database_url, model)
    console.print(Panel.fit(
        f"[bold green]chatloom 已启动[/bold green]\n"
        f"房间: {room}\n"
        f"模型: {engine.config.model}\n"
        f"上下文策略: {engine.config.context_policy}",
        title="🧵 chatloom"
    ))
    asyncio.run(_chat_loop(engine, room, persona, system_prompt))


async def _chat_loop(engine: ConversationEngine, room: int, persona: str, system_prompt: Optional[str]) -> None:
    last_reply_id: Optional[int] = None
    try:
        while True:
            text = Prompt.ask("[bold green]>[/bold green]").strip()
            if not text:
                continue
            if text in ("/exit", "/quit"):
                break
            try:
                if text == "/branches":
                    _print_branches(engine, room)
                    continue
                if text.startswith("/fork"):
                    parts = text.split()
                    tag = engine.fork(room, int(parts[1]), parts[2] if len(parts) > 2 else None)
                    console.print(f"[green]已分叉到分支 {tag}[/green]")
                    continue
                if text.startswith("/switch"):
                    engine.switch(room, text.split(maxsplit=1)[1])
                    console.print("[green]已切换[/green]")
                    continue
                if text == "/regen":
                    if last_reply_id is None:
                        leaf = engine.branches.active_leaf(room)
                        last_reply_id = leaf.id if leaf is not None else None
                    if last_reply_id is None:
                        console.print("[yellow]没有可重新生成的回复[/yellow]")
                        continue
                    result = await engine.regenerate(room, last_reply_id, persona_name=persona,
                                                     system_prompt=system_prompt)
                else:
                    result = await engine.send_message(room, text, persona_name=persona,
                                                       system_prompt=system_prompt)
                last_reply_id = result.reply.id
                console.print(Panel(Markdown(result.reply.content), title=f"🤖 {persona}", border_style="blue"))
            except (IndexError, ValueError):
                console.print("[yellow]命令参数不正确[/yellow]")
            except ChatloomError as e:
                console.print(f"[red]{e.code}: {e.message}[/red]")
    except (KeyboardInterrupt, EOFError):
        console.print("\n[yellow]收到中断信号，正在关闭...[/yellow]")
    finally:
        await engine.close()
        console.print("[green]chatloom 已关闭[/green]")


def _print_branches(engine: ConversationEngine, room: int) -> None:
    branches = engine.list_branches(room)
    if not branches:
        console.print("[yellow]该房间还没有消息[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("分支", style="cyan")
    table.add_column("消息数", justify="right")
    table.add_column("最后消息", justify="right")
    table.add_column("创建时间", style="green")
    table.add_column("活动", justify="center")
    for b in branches:
        created = b.earliest_created_at.strftime("%Y-%m-%d %H:%M:%S") if b.earliest_created_at else "N/A"
        table.add_row(b.tag, str(b.turn_count), str(b.last_turn_id), created, "✅" if b.is_active else "")
    console.print(table)


@app.command()
def branches(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    database_url: Optional[str] = DB_OPTION,
):
    """列出房间分支"""
    try:
        _print_branches(_engine(database_url), room)
    except ChatloomError as e:
        _fail(e)


@app.command()
def tree(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    database_url: Optional[str] = DB_OPTION,
):
    """显示消息树"""
    try:
        roots = _engine(database_url).tree(room)
    except ChatloomError as e:
        _fail(e)
        return
    if not roots:
        console.print("[yellow]该房间还没有消息[/yellow]")
        return
    view = Tree(f"[bold]房间 {room}[/bold]")
    _render_tree(roots, view)
    console.print(view)


@app.command()
def fork(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    turn: int = typer.Option(..., "--turn", "-t", help="分叉点消息ID"),
    tag: Optional[str] = typer.Option(None, "--tag", help="新分支名，留空自动生成 branch-N"),
    database_url: Optional[str] = DB_OPTION,
):
    """从历史消息分叉出新分支"""
    try:
        new_tag = _engine(database_url).fork(room, turn, tag)
    except ChatloomError as e:
        _fail(e)
        return
    console.print(f"[green]✅ 已从消息 {turn} 分叉出分支 {new_tag}[/green]")


@app.command()
def switch(
    tag: str = typer.Argument(..., help="分支名"),
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    database_url: Optional[str] = DB_OPTION,
):
    """切换活动分支"""
    try:
        path = _engine(database_url).switch(room, tag)
    except ChatloomError as e:
        _fail(e)
        return
    console.print(f"[green]✅ 已切换到分支 {tag}（{len(path)} 条消息）[/green]")


@app.command("delete-branch")
def delete_branch(
    tag: str = typer.Argument(..., help="分支名"),
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    database_url: Optional[str] = DB_OPTION,
):
    """删除分支（软删除）"""
    try:
        removed = _engine(database_url).delete_branch(room, tag)
    except ChatloomError as e:
        _fail(e)
        return
    console.print(f"[green]✅ 已删除分支 {tag}，墓碑 {removed} 条消息[/green]")


@app.command()
def memories(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="按类型过滤"),
    add: Optional[str] = typer.Option(None, "--add", help="添加一条手动记忆"),
    importance: int = typer.Option(5, "--importance", "-i", help="手动记忆的重要度 1-10"),
    delete: Optional[int] = typer.Option(None, "--delete", help="删除指定记忆ID"),
    database_url: Optional[str] = DB_OPTION,
):
    """查看和维护房间记忆"""
    engine = _engine(database_url)
    try:
        if add:
            memory = engine.create_memory(room, add, kind=kind or "user_note", importance=importance)
            console.print(f"[green]✅ 已添加记忆 {memory.id}[/green]")
            return
        if delete is not None:
            engine.delete_memory(room, delete)
            console.print(f"[green]✅ 已删除记忆 {delete}[/green]")
            return
        items = engine.list_memories(room, kind=kind)
    except ChatloomError as e:
        _fail(e)
        return

    if not items:
        console.print("[yellow]没有记忆[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("类型", style="cyan")
    table.add_column("重要度", justify="right")
    table.add_column("覆盖范围")
    table.add_column("来源", style="green")
    table.add_column("内容")
    for m in items:
        span = f"{m.range_start}-{m.range_end}" if m.covers_turn_range else ""
        table.add_row(str(m.id), m.kind, str(m.importance), span, m.created_by, m.content)
    console.print(table)


@app.command()
def summarize(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    persona: str = typer.Option("Assistant", "--persona", "-p", help="角色名称"),
    force: bool = typer.Option(False, "--force", "-f", help="不检查触发条件直接摘要"),
    database_url: Optional[str] = DB_OPTION,
):
    """手动触发摘要"""
    engine = _engine(database_url)
    if not force and not engine.memory.needs_summarization(room):
        console.print("[dim]未达到摘要阈值，使用 --force 强制摘要[/dim]")
        return
    memory = asyncio.run(engine.summarize_now(room, persona))
    if memory is None:
        console.print("[yellow]没有生成摘要[/yellow]")
        return
    console.print(Panel(memory.content, title=f"📝 摘要 {memory.range_start}-{memory.range_end}", border_style="cyan"))


@app.command()
def cleanup(
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    keep: Optional[int] = typer.Option(None, "--keep", "-k", help="保留条数，默认读取配置"),
    database_url: Optional[str] = DB_OPTION,
):
    """清理低价值记忆"""
    try:
        deleted = _engine(database_url).cleanup_memories(room, keep)
    except ChatloomError as e:
        _fail(e)
        return
    console.print(f"[green]✅ 已删除 {deleted} 条记忆[/green]")


@app.command()
def context(
    message: str = typer.Argument(..., help="假设要发送的新消息"),
    room: int = typer.Option(..., "--room", "-r", help="房间ID"),
    policy: Optional[str] = typer.Option(None, "--policy", help="simple 或 smart"),
    budget: Optional[int] = typer.Option(None, "--budget", "-b", help="token 预算"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="按模型查预算"),
    database_url: Optional[str] = DB_OPTION,
):
    """预览将要发送给模型的上下文"""
    try:
        preview = _engine(database_url, model).preview_context(
            room, message, model=model, token_budget=budget, policy=policy,
        )
    except ChatloomError as e:
        _fail(e)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", width=4)
    table.add_column("角色", style="cyan")
    table.add_column("类型", style="yellow")
    table.add_column("内容")
    for i, entry in enumerate(preview["entries"], 1):
        table.add_row(str(i), entry.role, entry.kind, entry.content)
    console.print(table)
    stats = preview["stats"]
    console.print(f"[dim]共 {stats['total_messages']} 条，{stats['total_chars']} 字符，约 {stats['estimated_tokens']} tokens[/dim]")


@app.command()
def version():
    """显示版本信息"""
    console.print(f"chatloom v{__version__}")


def main():
    """主入口函数"""
    app()


if __name__ == "__main__":
    main()
