"""命令行接口"""

import asyncio
import re
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .core.errors import PictureBookError
from .core.generator import PictureBookGenerator
from .core.models import (
    CharacterProfile,
    ContentMode,
    ContentSettings,
    PictureBook,
    StorySettings,
    StoryType,
)
from .services.story_adapter import StoryAdapter
from .utils.config import ImageEngine, Language, Settings, TaskType, get_settings
from .utils.log import setup_logging

app = typer.Typer(
    name="picture-book",
    help="""自闭症儿童教育绘本生成工具 - 根据角色、故事类型和教学主题生成带插画的绘本

快速开始:
  picture-book generate --name 小明 --topic 学会排队        # 生成6页中文绘本
  picture-book generate --name Tom --lang en --pages 4     # 生成4页英文绘本
  picture-book generate --no-images                       # 只生成故事文本

更多示例:
  picture-book story-types                                # 查看故事类型
  picture-book check-config                               # 检查API配置
""",
)
console = Console()

# 错误类型 -> 退出码，界面需要区分这些情况
EXIT_CODES = {
    "configuration": 2,
    "rate_limit": 3,
    "sensitive_content": 4,
    "story_parse": 5,
    "timeout": 6,
}

ERROR_HINTS = {
    "configuration": "运行 'picture-book check-config' 查看缺少的配置",
    "rate_limit": "请等待几分钟后重试",
    "sensitive_content": "请修改角色描述或教学主题后重试",
    "story_parse": "请重新生成",
    "timeout": "服务繁忙，请稍后重试",
}


def _parse_enum(enum_cls, value: str, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        console.print(f"[red]不支持的{label}: {value}[/red]")
        console.print(f"可选值: {', '.join(item.value for item in enum_cls)}")
        raise typer.Exit(1)


def _safe_filename(title: str) -> str:
    return re.sub(r'[\\/:*?"<>|\s]+', "_", title).strip("_") or "picture_book"


def report_error(error: PictureBookError) -> int:
    """按错误类型输出提示，返回退出码"""
    hint = ERROR_HINTS.get(error.kind)
    body = f"[bold]{error.user_message}[/bold]\n[dim]{error}[/dim]"
    if hint:
        body += f"\n\n提示: {hint}"
    console.print(Panel(body, title=f"生成失败 ({error.kind})", border_style="red"))
    return EXIT_CODES.get(error.kind, 1)


def save_book(book: PictureBook, output: Path | None, output_dir: str) -> tuple[Path, Path]:
    """保存 Markdown 和 JSON，返回两个文件路径"""
    if output is None:
        directory = Path(output_dir)
        markdown_path = directory / f"{_safe_filename(book.title)}.md"
    else:
        markdown_path = output if output.suffix == ".md" else output.with_suffix(".md")
    markdown_path.parent.mkdir(parents=True, exist_ok=True)

    json_path = markdown_path.with_suffix(".json")
    markdown_path.write_text(book.to_markdown(), encoding="utf-8")
    json_path.write_text(book.model_dump_json(indent=2), encoding="utf-8")
    return markdown_path, json_path


@app.command()
def generate(
    name: str = typer.Option("", "--name", "-n", help="主角名字"),
    age: int = typer.Option(6, "--age", help="主角年龄 (2-12)", min=2, max=12),
    gender: str = typer.Option("any", "--gender", help="性别: boy, girl, any"),
    identity: str = typer.Option("human", "--identity", help="身份: human(人类), animal(动物)"),
    description: str = typer.Option("", "--description", "-d", help="主角外貌描述，中英文均可"),
    personality: str = typer.Option("", "--personality", help="性格特点"),
    story_type: str = typer.Option("growth", "--type", "-t", help="故事类型，见 story-types 命令"),
    setting: str = typer.Option("", "--setting", help="故事背景，如：幼儿园、公园"),
    pages: int = typer.Option(6, "--pages", "-p", help="页数 (1-12)", min=1, max=12),
    language: str = typer.Option("zh", "--lang", "-l", help="故事语言: zh(中文), en(英文)"),
    topic: str = typer.Option(None, "--topic", help="教学主题 (默认: 学会分享与合作)"),
    goals: str = typer.Option("", "--goals", help="教育目标"),
    mode: str = typer.Option("random", "--mode", help="内容模式: custom, selected, random"),
    engine: str = typer.Option(None, "--engine", "-e", help="插画引擎: liblib, dalle (默认读取配置)"),
    consistency: bool = typer.Option(
        False,
        "--consistency/--no-consistency",
        help="先生成角色主图，再以主图为参考生成每页插画",
    ),
    images: bool = typer.Option(True, "--images/--no-images", help="是否生成插画"),
    optimize: bool = typer.Option(
        False,
        "--optimize-description/--no-optimize-description",
        help="先由模型补全角色描述中缺少的外貌特征",
    ),
    output: str = typer.Option(None, "--output", "-o", help="输出文件路径 (默认: ./output/<标题>.md)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
):
    """生成一本教育绘本

    示例:
        picture-book generate --name 小明 --age 5 --gender boy --topic 学会排队

        picture-book generate --name Bunny --identity animal --type friendship --consistency

        picture-book generate --description "戴红色帽子的小女孩" --pages 4 -o ./books/hat.md
    """
    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level)

    character = CharacterProfile(
        name=name,
        age=age,
        gender=gender,
        identity=identity,
        description=description,
        personality=personality,
    )
    story = StorySettings(
        story_type=_parse_enum(StoryType, story_type, "故事类型"),
        setting=setting,
        page_count=pages,
        language=_parse_enum(Language, language, "语言"),
    )
    content = ContentSettings(mode=_parse_enum(ContentMode, mode, "内容模式"), educational_goals=goals)
    if topic:
        content.educational_topic = topic
    image_engine = _parse_enum(ImageEngine, engine, "插画引擎") if engine else settings.image_engine

    console.print(
        Panel(
            f"[bold]主角:[/bold] {name or StoryAdapter.DEFAULT_CHARACTER_NAME} ({age}岁)\n"
            f"[bold]故事类型:[/bold] {StoryAdapter.story_type_label(story.story_type)}\n"
            f"[bold]教学主题:[/bold] {content.educational_topic}\n"
            f"[bold]页数:[/bold] {pages}\n"
            f"[bold]插画:[/bold] {image_engine.value if images else '不生成'}"
            f"{' (角色一致性)' if images and consistency else ''}",
            title="绘本生成配置",
            border_style="blue",
        )
    )

    try:
        book = asyncio.run(
            _generate_async(settings, character, story, content, image_engine, images, consistency, optimize)
        )
    except PictureBookError as e:
        raise typer.Exit(report_error(e))

    markdown_path, json_path = save_book(book, Path(output) if output else None, settings.output_dir)
    console.print(f"[green]绘本已保存到: {markdown_path}[/green]")
    console.print(f"[dim]结构化数据: {json_path}[/dim]")


async def _generate_async(
    settings: Settings,
    character: CharacterProfile,
    story: StorySettings,
    content: ContentSettings,
    engine: ImageEngine,
    illustrate: bool,
    consistency: bool,
    optimize: bool = False,
) -> PictureBook:
    """generate 命令的异步主逻辑，确保只调用一次 asyncio.run()"""
    async with PictureBookGenerator(settings, engine=engine) as generator:
        book = await generator.generate(
            character,
            story,
            content,
            illustrate=illustrate,
            consistency=consistency,
            optimize_description=optimize,
        )
        console.print(account_table(generator.text_client.balancer.status()))
    return book


def account_table(status: list[dict]) -> Table:
    """文本生成账号的本小时用量"""
    table = Table(title="文本生成账号")
    table.add_column("账号")
    table.add_column("本小时调用", justify="right")
    table.add_column("剩余额度", justify="right")
    table.add_column("状态")
    for account in status:
        if account["rate_limited"]:
            state = f"[yellow]冷却中 (剩余 {account['cooldown_remaining']:.0f} 秒)[/yellow]"
        else:
            state = "[green]可用[/green]"
        table.add_row(account["id"], str(account["calls_this_hour"]), str(account["remaining_calls"]), state)
    return table


@app.command()
def story_types():
    """列出支持的故事类型"""
    console.print("\n[bold]支持的故事类型:[/bold]\n")
    for story_type in StoryType:
        zh = StoryAdapter.story_type_label(story_type, Language.CHINESE)
        en = StoryAdapter.story_type_label(story_type, Language.ENGLISH)
        console.print(f"  {story_type.value}: {zh} ({en})")
    console.print()


@app.command()
def check_config():
    """检查各服务的配置状态"""
    settings = get_settings()

    table = Table(title="服务配置")
    table.add_column("服务")
    table.add_column("状态")
    table.add_column("说明")

    accounts = [account_id for account_id, _ in settings.get_text_api_keys()]
    table.add_row(
        "文本生成",
        "[green]已配置[/green]" if accounts else "[red]未配置[/red]",
        f"账号: {', '.join(accounts) or '无'} | {settings.text_base_url}",
    )
    table.add_row(
        "LiblibAI",
        "[green]已配置[/green]" if settings.is_liblib_configured() else "[yellow]未配置[/yellow]",
        settings.liblib_base_url,
    )
    table.add_row(
        "DALL-E",
        "[green]已配置[/green]" if settings.is_dalle_configured() else "[yellow]未配置[/yellow]",
        settings.dalle_model,
    )
    console.print(table)

    models = ", ".join(f"{task.value}={settings.get_model_for_task(task)}" for task in TaskType)
    console.print(f"[dim]任务模型: {models}[/dim]")
    console.print(f"[dim]默认插画引擎: {settings.image_engine.value}[/dim]")

    if not accounts:
        console.print("[red]请在 .env 中设置 TEXT_PRIMARY_API_KEY 或 TEXT_SECONDARY_API_KEY[/red]")
        raise typer.Exit(EXIT_CODES["configuration"])


@app.command()
def version():
    """显示版本信息"""
    from . import __version__

    console.print(f"picture-book-creator v{__version__}")


if __name__ == "__main__":
    app()
