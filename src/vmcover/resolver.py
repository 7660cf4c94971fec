from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse


class Resolver:
    """Maps script URIs to absolute file paths."""

    def resolve(self, uri: str) -> Optional[str]:
        raise NotImplementedError


def _uri_to_path(uri: str, base: Path) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme == 'file':
        return Path(unquote(parsed.path))
    return (base / unquote(uri)).resolve()


class PackageResolver(Resolver):
    """Resolves ``package:`` URIs using a package configuration file.

    The file is the JSON ``package_config.json`` format::

        {"configVersion": 2,
         "packages": [{"name": "foo", "rootUri": "foo", "packageUri": "lib/"}]}

    A relative ``rootUri`` is taken relative to the configuration file's
    directory, and ``packageUri`` (default: the root itself) relative to the root.
    """

    def __init__(self, packages: Dict[str, Path]):
        self.packages = packages

    @classmethod
    def from_file(cls, packages_path) -> "PackageResolver":
        packages_path = Path(packages_path).resolve()
        config = json.loads(packages_path.read_text(encoding='utf-8'))

        base = packages_path.parent
        packages = dict()
        for p in config.get('packages', []):
            root = _uri_to_path(p['rootUri'], base)
            if (package_uri := p.get('packageUri')):
                root = _uri_to_path(package_uri, root)
            packages[p['name']] = root

        return cls(packages)

    def package_names(self) -> List[str]:
        return sorted(self.packages)

    def resolve(self, uri: str) -> Optional[str]:
        if uri.startswith('file:'):
            return str(Path(unquote(urlparse(uri).path)))

        if not uri.startswith('package:'):
            return None

        name, _, rest = uri[len('package:'):].partition('/')
        if not rest or name not in self.packages:
            return None

        return str(self.packages[name] / unquote(rest))
