#!/usr/bin/env python3
"""Fetch a Portrait JSON document by content hash from IPFS or Arweave.

Sources:
A) IPFS gateways: every configured gateway is raced, first verified body wins.
B) Arweave: a paginated GraphQL tag search, candidates checked in height order.
Both sources are raced against each other. A body is only ever returned after
its sha2-256 CIDv1 matches the requested hash.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TypeVar

import aiohttp
import yaml
from multiformats import CID, multihash

DEFAULT_IPFS_GATEWAYS = (
    "https://ipfs.io/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://ipfs.infura.io/ipfs/",
    "https://ipfs.fleek.co/ipfs/",
    "https://ipfs.dweb.link/ipfs/",
)
DEFAULT_ARWEAVE_GRAPHQL = "https://arweave-search.goldsky.com/graphql"
DEFAULT_ARWEAVE_GATEWAY = "https://arweave.net"
DEFAULT_MAX_PAGES = 50

ARCHIVE_PAGE_SIZE = 10
PORTRAIT_PROTOCOL = "Portrait"

TRANSACTIONS_QUERY = """
query PortraitTransactions($tags: [TagFilter!], $first: Int, $after: String) {
  transactions(tags: $tags, first: $first, after: $after, sort: HEIGHT_ASC) {
    edges {
      cursor
      node {
        id
        tags {
          name
          value
        }
      }
    }
  }
}
"""

T = TypeVar("T")


class PortraitError(Exception):
    """Base class for every failure raised by this module."""


class SourceError(PortraitError):
    """A single source (gateway, index or archive object) failed."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class NetworkError(SourceError):
    pass


class HttpStatusError(SourceError):
    def __init__(self, source: str, status: int) -> None:
        super().__init__(source, f"HTTP {status}")
        self.status = status


class ParseError(SourceError):
    pass


class HashMismatchError(SourceError):
    pass


class NotFoundError(SourceError):
    pass


class AggregateError(PortraitError):
    """Every source in a race failed; ``errors`` keeps one entry per source."""

    def __init__(self, message: str, errors: Iterable[BaseException]) -> None:
        super().__init__(message)
        self.errors = list(errors)


class AllSourcesFailed(AggregateError):
    pass


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    ipfs_gateways: list[str] = field(default_factory=lambda: list(DEFAULT_IPFS_GATEWAYS))
    arweave_graphql: str = DEFAULT_ARWEAVE_GRAPHQL
    arweave_gateway: str = DEFAULT_ARWEAVE_GATEWAY
    max_pages: int = DEFAULT_MAX_PAGES
    timeout_sec: int = 30
    deadline_sec: float | None = None

    @property
    def archive(self) -> ArchiveEndpoint:
        return ArchiveEndpoint(self.arweave_graphql, self.arweave_gateway)


@dataclass(frozen=True, slots=True)
class ArchiveEndpoint:
    """Arweave GraphQL index plus the gateway serving transaction data."""

    graphql_url: str
    gateway_url: str

    def object_url(self, tx_id: str) -> str:
        """Return the gateway URL for one transaction's data."""
        return f"{self.gateway_url.rstrip('/')}/{tx_id}"


@dataclass(frozen=True, slots=True)
class Candidate:
    tx_id: str
    cursor: str


def raw_cid(data: bytes) -> CID:
    return CID("base32", 1, "raw", multihash.digest(data, "sha2-256"))


def content_id(data: bytes) -> str:
    """Return the base32 CIDv1 (raw codec, sha2-256) of ``data``."""
    return str(raw_cid(data))


def verify_cid(expected: str | CID, data: bytes) -> bool:
    """Check that ``data`` hashes to ``expected``, whatever multibase it is written in."""
    try:
        wanted = expected if isinstance(expected, CID) else CID.decode(expected)
    except Exception:  # noqa: BLE001
        return False
    generated = raw_cid(data)
    return wanted.codec == generated.codec and wanted.digest == generated.digest


async def first_success(aws: Iterable[Awaitable[T]]) -> T:
    """Run awaitables concurrently and return the first successful result.

    Remaining tasks are cancelled (and awaited) as soon as a winner is known.
    ``PortraitError`` failures only eliminate their own task; when all tasks
    fail an ``AggregateError`` carries their errors in submission order. Any
    other exception is propagated immediately.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        raise AggregateError("No sources to try", [])

    errors: dict[asyncio.Future[T], BaseException] = {}
    pending: set[asyncio.Future[T]] = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            winner: asyncio.Future[T] | None = None
            for task in tasks:
                if task not in done:
                    continue
                exc = task.exception()
                if exc is None:
                    if winner is None:
                        winner = task
                elif isinstance(exc, PortraitError):
                    errors[task] = exc
                else:
                    raise exc
            if winner is not None:
                return winner.result()
        raise AggregateError(f"All {len(tasks)} sources failed", [errors[task] for task in tasks])
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def leaf_errors(errors: Iterable[BaseException]) -> list[BaseException]:
    """Flatten nested ``AggregateError`` instances into their underlying errors."""
    out: list[BaseException] = []
    for error in errors:
        if isinstance(error, AggregateError):
            out.extend(leaf_errors(error.errors))
        else:
            out.append(error)
    return out


async def fetch_bytes(
    session: aiohttp.ClientSession,
    url: str,
    json_body: Any | None = None,
) -> bytes:
    """GET ``url`` (or POST ``json_body`` to it) and return the body of a 2xx response."""
    logging.debug("%s %s", "GET" if json_body is None else "POST", url)
    try:
        if json_body is None:
            request = session.get(url)
        else:
            request = session.post(url, json=json_body)
        async with request as resp:
            if not 200 <= resp.status < 300:
                raise HttpStatusError(url, resp.status)
            return await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise NetworkError(url, f"request failed ({exc!r})") from exc


def parse_json_bytes(data: bytes, url: str) -> Any:
    """Parse JSON payload bytes."""
    try:
        return json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseError(url, f"invalid JSON ({exc})") from exc


def verified_document(data: bytes, cid: str, url: str) -> Any:
    """Parse ``data`` and return it only if the exact bytes match ``cid``."""
    document = parse_json_bytes(data, url)
    if not verify_cid(cid, data):
        raise HashMismatchError(url, f"content does not hash to {cid}")
    return document


async def fetch_from_gateway(session: aiohttp.ClientSession, gateway: str, cid: str) -> Any:
    """Fetch and verify a portrait from one IPFS gateway."""
    url = f"{gateway}{cid}"
    document = verified_document(await fetch_bytes(session, url), cid, url)
    logging.debug("Verified %s from IPFS gateway %s", cid, gateway)
    return document


async def fetch_from_gateways(session: aiohttp.ClientSession, gateways: Sequence[str], cid: str) -> Any:
    """Race all IPFS gateways; the first verified response wins."""
    try:
        return await first_success(fetch_from_gateway(session, gateway, cid) for gateway in gateways)
    except AggregateError as exc:
        for error in exc.errors:
            logging.warning("IPFS gateway rejected: %s", error)
        raise AggregateError(f"Failed to fetch {cid} from {len(gateways)} IPFS gateway(s)", exc.errors) from None


def build_search_tags(cid: str, author: str | None = None) -> list[dict[str, Any]]:
    """Tag filters selecting Portrait uploads of ``cid`` (optionally by ``author``)."""
    tags = [
        {"name": "Protocol", "values": [PORTRAIT_PROTOCOL]},
        {"name": "IPFS-Add", "values": [cid]},
    ]
    if author:
        tags.append({"name": "Author", "values": [author]})
    return tags


def parse_candidates(obj: Any, url: str) -> list[Candidate]:
    """Extract (transaction id, cursor) pairs from a GraphQL transactions response."""
    try:
        edges = obj["data"]["transactions"]["edges"]
        candidates = [Candidate(tx_id=edge["node"]["id"], cursor=edge["cursor"]) for edge in edges]
    except (KeyError, TypeError) as exc:
        errors = obj.get("errors") if isinstance(obj, dict) else None
        raise ParseError(url, f"unexpected index response ({errors or exc!r})") from exc
    for candidate in candidates:
        if not isinstance(candidate.tx_id, str) or not isinstance(candidate.cursor, str) or not candidate.tx_id:
            raise ParseError(url, f"malformed index edge (id={candidate.tx_id!r}, cursor={candidate.cursor!r})")
    return candidates


async def query_archive_index(
    session: aiohttp.ClientSession,
    archive: ArchiveEndpoint,
    tags: list[dict[str, Any]],
    cursor: str | None = None,
) -> list[Candidate]:
    """Fetch one page of matching transactions, oldest first."""
    variables: dict[str, Any] = {"tags": tags, "first": ARCHIVE_PAGE_SIZE}
    if cursor is not None:
        variables["after"] = cursor
    body = await fetch_bytes(session, archive.graphql_url, {"query": TRANSACTIONS_QUERY, "variables": variables})
    return parse_candidates(parse_json_bytes(body, archive.graphql_url), archive.graphql_url)


async def search_archive(
    session: aiohttp.ClientSession,
    archive: ArchiveEndpoint,
    cid: str,
    author: str | None = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> Any:
    """Search Arweave for the earliest upload whose content verifies against ``cid``.

    Pages of ``ARCHIVE_PAGE_SIZE`` candidates are walked in ascending block
    height. A full page means more may follow; a short page ends the search.
    At most ``max_pages`` index queries are issued.
    """
    if max_pages < 1:
        raise ValueError(f"max_pages must be at least 1, got {max_pages}")
    tags = build_search_tags(cid, author)
    cursor: str | None = None
    for page in range(1, max_pages + 1):
        candidates = await query_archive_index(session, archive, tags, cursor)
        logging.debug("Arweave page %s: %s candidate(s) for %s", page, len(candidates), cid)
        for candidate in candidates:
            url = archive.object_url(candidate.tx_id)
            try:
                document = verified_document(await fetch_bytes(session, url), cid, url)
            except SourceError as exc:
                logging.warning("Arweave candidate rejected: %s", exc)
                continue
            logging.debug("Verified %s from Arweave transaction %s", cid, candidate.tx_id)
            return document
        if len(candidates) < ARCHIVE_PAGE_SIZE:
            raise NotFoundError(archive.graphql_url, f"no Arweave upload verifies against {cid}")
        cursor = candidates[-1].cursor
    raise NotFoundError(archive.graphql_url, f"no match for {cid} within {max_pages} page(s)")


async def fetch_portrait(
    session: aiohttp.ClientSession,
    cid: str | CID,
    gateways: Sequence[str],
    archive: ArchiveEndpoint,
    author: str | None = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> Any:
    """Race IPFS and Arweave and return the first verified portrait."""
    cid = str(cid)
    try:
        return await first_success(
            [
                fetch_from_gateways(session, gateways, cid),
                search_archive(session, archive, cid, author, max_pages),
            ]
        )
    except AggregateError as exc:
        raise AllSourcesFailed(f"Failed to fetch portrait {cid} from IPFS or Arweave", leaf_errors(exc.errors)) from None


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
ENS_LABEL_RE = re.compile(r"^[a-z0-9-]+$")
COLLECTIVE_NAME_RE = re.compile(r"^[a-z0-9]{3,64}$")


def classify_identity(value: str) -> str:
    """Return "address", "ens" or "collective" for a Portrait identity."""
    if ADDRESS_RE.match(value):
        return "address"
    labels = value.split(".")
    if len(labels) > 1 and all(ENS_LABEL_RE.match(label) for label in labels):
        return "ens"
    if COLLECTIVE_NAME_RE.match(value):
        return "collective"
    raise ValueError(f"Invalid Portrait identity: {value!r}")


class PortraitRegistry(Protocol):
    """On-chain lookups this module depends on but does not implement."""

    async def portrait_hash(self, identity: str) -> str: ...

    async def resolve_name(self, name: str) -> str | None: ...


async def get_portrait(
    session: aiohttp.ClientSession,
    identity: str,
    registry: PortraitRegistry,
    config: Config,
) -> Any:
    """Resolve ``identity`` through the registry and fetch its portrait."""
    kind = classify_identity(identity)
    author: str | None = None
    owner = identity
    if kind == "ens":
        resolved = await registry.resolve_name(identity)
        if not resolved:
            raise NotFoundError(identity, "ENS name does not resolve to an address")
        author = owner = resolved
    elif kind == "address":
        author = identity

    cid = await registry.portrait_hash(owner)
    if not cid:
        raise NotFoundError(identity, "no portrait registered")
    logging.info("Portrait of %s is %s", identity, cid)
    return await fetch_portrait(session, cid, config.ipfs_gateways, config.archive, author, config.max_pages)


def load_config(config_path: Path) -> Config:
    """Load config.yaml and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config.yaml must be a mapping")

    gateways = data.get("ipfs_gateways", list(DEFAULT_IPFS_GATEWAYS))
    if isinstance(gateways, str):
        gateways = [gateways]
    if not isinstance(gateways, list):
        raise ValueError("ipfs_gateways must be a list of URLs")
    max_pages = int(data.get("max_pages", DEFAULT_MAX_PAGES))
    if max_pages < 1:
        raise ValueError("max_pages must be at least 1")
    deadline = data.get("deadline_sec")

    return Config(
        ipfs_gateways=[str(gateway) for gateway in gateways],
        arweave_graphql=str(data.get("arweave_graphql", DEFAULT_ARWEAVE_GRAPHQL)),
        arweave_gateway=str(data.get("arweave_gateway", DEFAULT_ARWEAVE_GATEWAY)).rstrip("/"),
        max_pages=max_pages,
        timeout_sec=int(data.get("timeout_sec", 30)),
        deadline_sec=float(deadline) if deadline is not None else None,
    )


async def run(config: Config, cid: str, author: str | None = None) -> Any:
    """Fetch one portrait with a fresh session, bounded by ``config.deadline_sec``."""
    logging.info("Fetching %s with config: %s", cid, config)
    timeout = aiohttp.ClientTimeout(total=config.timeout_sec)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        fetch = fetch_portrait(session, cid, config.ipfs_gateways, config.archive, author, config.max_pages)
        if config.deadline_sec is None:
            return await fetch
        return await asyncio.wait_for(fetch, config.deadline_sec)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Fetch and verify a Portrait document by content hash")
    parser.add_argument("cid", help="Content hash (CIDv1) of the portrait")
    parser.add_argument("--author", help="Restrict Arweave results to this uploader address")
    parser.add_argument("--config", help="Path to config YAML file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every request")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config = Config()
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            raise SystemExit(f"config file not found: {config_path}")
        config = load_config(config_path)

    try:
        document = asyncio.run(run(config, args.cid, args.author))
    except AggregateError as exc:
        logging.error("%s", exc)
        for error in exc.errors:
            logging.error("  %s", error)
        raise SystemExit(1) from None
    except asyncio.TimeoutError:
        logging.error("Gave up on %s after %ss", args.cid, config.deadline_sec)
        raise SystemExit(1) from None

    print(json.dumps(document, ensure_ascii=False, indent=2))
    raise SystemExit(0)


if __name__ == "__main__":
    main()
