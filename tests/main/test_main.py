"""Tests for the command line entry point."""

import asyncio
import json

import pytest

from main import build_parser, main, setup_logging
from tilestore import HandleRegistry, open_store

FOO_MD5 = 'acbd18db4cc2f85cedef654fccc4a4d8'


@pytest.fixture
def tile_file(tmp_path):
    path = tmp_path / 'tile.bin'
    path.write_bytes(b'foo')
    return path


def put_info(path, info):
    async def run():
        async with HandleRegistry() as registry:
            store = await open_store(path, registry)
            await store.put_info(info)
            await store.close()

    asyncio.run(run())


class TestMain:
    def test_setup_logging(self):
        setup_logging('DEBUG')

    def test_put_get_drop(self, tmp_path, tile_file, capsys):
        store = str(tmp_path / 'store')
        out = tmp_path / 'out.bin'

        assert main(['put', store, '0', '0', '0', str(tile_file), '--header', 'Content-Type=text/plain']) == 0
        assert main(['get', store, '0', '0', '0', '-o', str(out)]) == 0
        assert out.read_bytes() == b'foo'
        headers = json.loads(capsys.readouterr().out)
        assert headers == {'content-md5': FOO_MD5, 'content-type': 'text/plain'}

        assert main(['drop', store, '0', '0', '0']) == 0
        assert main(['get', store, '0', '0', '0', '-o', str(out)]) == 1
        assert main(['drop', store, '0', '0', '0']) == 1

    def test_get_missing_store(self, tmp_path):
        assert main(['get', str(tmp_path / 'nope'), '1', '0', '0']) == 1

    def test_invalid_coordinate(self, tmp_path, tile_file):
        assert main(['put', str(tmp_path / 's'), '1', '5', '0', str(tile_file)]) == 2

    def test_info(self, tmp_path, tile_file, capsys):
        store = tmp_path / 'store'
        assert main(['info', str(store)]) == 1
        put_info(store, {'scheme': 'xyz', 'minzoom': 0, 'maxzoom': 5})
        capsys.readouterr()
        assert main(['info', str(store)]) == 0
        assert json.loads(capsys.readouterr().out) == {'scheme': 'xyz', 'minzoom': 0, 'maxzoom': 5}

    def test_copy(self, tmp_path, tile_file, capsys):
        source = str(tmp_path / 'src')
        target = str(tmp_path / 'dst')
        main(['put', source, '1', '1', '0', str(tile_file)])
        main(['put', source, '1', '0', '1', str(tile_file)])
        capsys.readouterr()

        assert main(['copy', source, target, '--maxzoom', '1', '--bbox', '10,10,20,20']) == 0
        assert json.loads(capsys.readouterr().out) == {'written': 1, 'skipped': 0}
        assert main(['get', target, '1', '1', '0', '-o', str(tmp_path / 'o')]) == 0
        assert main(['get', target, '1', '0', '1', '-o', str(tmp_path / 'o')]) == 1

    def test_compact(self, tmp_path, tile_file):
        store = str(tmp_path / 'store')
        assert main(['compact', store]) == 1
        main(['put', store, '0', '0', '0', str(tile_file)])
        assert main(['compact', store]) == 0

    def test_missing_profile(self, tmp_path):
        assert main(['--profile', str(tmp_path / 'none.toml'), 'info', str(tmp_path)]) == 2

    def test_profile(self, tmp_path, tile_file):
        profile = tmp_path / 'p.toml'
        profile.write_text('[lifecycle]\ncompact_on_close = false\n', encoding='utf-8')
        assert main(['--profile', str(profile), 'put', str(tmp_path / 's'), '0', '0', '0', str(tile_file)]) == 0


class TestParser:
    def test_usage_error(self):
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(['bogus'])
        assert exc.value.code == 2

    def test_bad_bbox(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['copy', 'a', 'b', '--bbox', '1,2,3'])

    def test_bad_header(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['put', 'p', '0', '0', '0', 'f', '--header', 'novalue'])

    def test_headers_are_collected(self):
        args = build_parser().parse_args(
            ['put', 'p', '0', '0', '0', 'f', '--header', 'A=1', '--header', 'B=x=y']
        )
        assert dict(args.header) == {'A': '1', 'B': 'x=y'}

    def test_bbox(self):
        args = build_parser().parse_args(['copy', 'a', 'b', '--bbox', '-10,-5,10,5.5'])
        assert args.bbox == (-10.0, -5.0, 10.0, 5.5)
