"""Tests for the tabwright command line."""

import pytest
from click.testing import CliRunner
from PIL import Image

from tabwright.cli import cli


@pytest.fixture
def site(tmp_path):
    (tmp_path / 'index.html').write_text(
        '<h1>Catalog</h1><ul><li class="row">Apple</li><li class="row" style="display:none">Pear</li></ul>'
        '<iframe src="/child.html"></iframe>',
        encoding='utf-8',
    )
    (tmp_path / 'child.html').write_text('<button>Buy</button>', encoding='utf-8')
    return tmp_path


class TestCli:
    def test_snapshot(self, site):
        result = CliRunner().invoke(cli, ['snapshot', str(site / 'index.html')])
        assert result.exit_code == 0, result.output
        assert 'heading "Catalog"' in result.output
        assert 'button "Buy" [ref=f1e1]' in result.output

    def test_query(self, site):
        result = CliRunner().invoke(cli, ['query', str(site / 'index.html'), 'li.row'])
        assert result.exit_code == 0, result.output
        assert '2 matches' in result.output
        assert 'Apple' in result.output
        assert 'Pear' in result.output

    def test_query_invalid_selector(self, site):
        result = CliRunner().invoke(cli, ['query', str(site / 'index.html'), 'xpath=//li'])
        assert result.exit_code == 1
        assert 'Error' in result.output

    def test_screenshot(self, site, tmp_path):
        output = tmp_path / 'shot.png'
        result = CliRunner().invoke(
            cli, ['screenshot', str(site / 'index.html'), str(output), '--width', '400', '--height', '300']
        )
        assert result.exit_code == 0, result.output
        with Image.open(output) as image:
            assert image.size == (400, 300)

    def test_screenshot_jpeg_from_suffix(self, site, tmp_path):
        output = tmp_path / 'shot.jpg'
        result = CliRunner().invoke(cli, ['screenshot', str(site / 'index.html'), str(output), '--quality', '70'])
        assert result.exit_code == 0, result.output
        assert output.read_bytes()[:2] == b'\xff\xd8'

    def test_missing_file(self, tmp_path):
        result = CliRunner().invoke(cli, ['snapshot', str(tmp_path / 'nope.html')])
        assert result.exit_code == 2
