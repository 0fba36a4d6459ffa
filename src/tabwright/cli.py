"""Command line front-end over the in-process host.

Every HTML file next to the given one is served under ``http://localhost/``,
so relative links and iframes between local files resolve.
"""

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tabwright.browser.page import Page
from tabwright.browser.session import BrowserSession
from tabwright.browser.views import ScreenshotOptions, TabwrightError
from tabwright.host.memory import MemoryHost
from tabwright.logging_config import setup_logging

console = Console()

LOCAL_ORIGIN = 'http://localhost'


def _serve_directory(host: MemoryHost, html_file: Path) -> str:
    """Route every HTML file of the directory and return the URL of ``html_file``."""
    for path in sorted(html_file.parent.glob('*.htm*')):
        host.route(f'{LOCAL_ORIGIN}/{path.name}', path.read_text(encoding='utf-8'))
    return f'{LOCAL_ORIGIN}/{html_file.name}'


async def _with_page(html_file: Path, viewport: tuple[int, int], fn):
    host = MemoryHost(viewport_width=viewport[0], viewport_height=viewport[1])
    url = _serve_directory(host, html_file)
    session = BrowserSession(host=host)
    await session.start()
    try:
        page: Page = await session.new_page(url)
        await page.wait_for_load_state('load')
        return await fn(page)
    finally:
        await session.stop()


@click.group()
@click.version_option(version='0.1.0', prog_name='tabwright')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """tabwright - browser control plane over an in-process host."""
    setup_logging(logging.DEBUG if verbose else None)


@cli.command()
@click.argument('html_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
def snapshot(html_file: Path):
    """Print the accessibility snapshot of HTML_FILE, child frames included."""

    async def run(page: Page) -> str:
        return await page.snapshot_for_ai()

    try:
        text = asyncio.run(_with_page(html_file, (1280, 720), run))
    except TabwrightError as e:
        console.print(f'[red]Error: {escape(str(e))}[/red]')
        raise SystemExit(1)
    console.print(Panel(Text(text or '(empty)'), title=html_file.name))


@cli.command()
@click.argument('html_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('selector')
def query(html_file: Path, selector: str):
    """List the elements of HTML_FILE matching SELECTOR."""

    async def run(page: Page) -> list[tuple[str, bool]]:
        rows = []
        for handle in await page.query_selector_all(selector):
            text = await handle.text_content() or ''
            rows.append((text.strip(), await handle.is_visible()))
        return rows

    try:
        rows = asyncio.run(_with_page(html_file, (1280, 720), run))
    except TabwrightError as e:
        console.print(f'[red]Error: {escape(str(e))}[/red]')
        raise SystemExit(1)

    table = Table(title=f'{escape(selector)} ({len(rows)} matches)')
    table.add_column('#', justify='right')
    table.add_column('Text')
    table.add_column('Visible')
    for index, (text, visible) in enumerate(rows):
        table.add_row(str(index), escape(text[:80]), '[green]yes[/green]' if visible else '[yellow]no[/yellow]')
    console.print(table)


@cli.command()
@click.argument('html_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('output', type=click.Path(dir_okay=False, path_type=Path))
@click.option('--full-page', is_flag=True, help='Capture the whole scrollable page')
@click.option('--type', 'image_type', type=click.Choice(['png', 'jpeg']), default=None, help='Image format (default from OUTPUT suffix)')
@click.option('--quality', type=click.IntRange(0, 100), default=None, help='JPEG quality')
@click.option('--width', default=1280, show_default=True, help='Viewport width')
@click.option('--height', default=720, show_default=True, help='Viewport height')
def screenshot(html_file: Path, output: Path, full_page: bool, image_type: str | None, quality: int | None, width: int, height: int):
    """Render HTML_FILE and write a screenshot to OUTPUT."""
    if image_type is None:
        image_type = 'jpeg' if output.suffix.lower() in ('.jpg', '.jpeg') else 'png'
    try:
        options = ScreenshotOptions(type=image_type, quality=quality, full_page=full_page, path=str(output))
    except ValueError as e:
        raise click.BadParameter(str(e))

    async def run(page: Page) -> bytes:
        return await page.screenshot(options)

    try:
        data = asyncio.run(_with_page(html_file, (width, height), run))
    except TabwrightError as e:
        console.print(f'[red]Error: {escape(str(e))}[/red]')
        raise SystemExit(1)
    console.print(f'[green]Saved {len(data)} bytes to {output}[/green]')


def main():
    cli()


if __name__ == '__main__':
    main()
