#!/usr/bin/env python3

"""
Garbage-collect a GitHub Container Registry (ghcr.io) package.

Every tag in the keep-set survives: the supported releases listed in a JSON
(or YAML) matrix file, any --release arguments, and the space/comma separated
--extra-tags.  Package versions carrying only tags outside the keep-set are
deleted, as are untagged versions.  A version whose digest is also carried by
a kept tag is never deleted, nor are the per-platform manifests of a kept
multi-arch image.

Most options default to an environment variable, see --help.  The
$GITHUB_TOKEN env. var. must hold a token with 'delete:packages' scope.
When $GITHUB_STEP_SUMMARY is set, a markdown report is appended to it.
"""

import argparse
import asyncio
import base64
import logging
import sys
from collections import namedtuple
from datetime import datetime, timedelta
from traceback import extract_stack
from typing import Iterable, Mapping, Optional, Sequence
from urllib.parse import quote

# Ref: https://docs.aiohttp.org/en/stable/http_request_lifecycle.html
from aiohttp import ClientError, ClientSession, ClientTimeout

# Ref: https://dateutil.readthedocs.io/en/stable/index.html
import dateutil.parser
import dateutil.tz

# Ref: https://github.com/rconradharris/envparse
from envparse import ConfigurationError, env

# Ref: https://requests.readthedocs.io/en/latest/
import requests

import yaml


# REST API for package versions
GH_API_URL = "https://api.github.com"
GH_API_VERSION = "2022-11-28"

# OCI distribution API, needed to look inside manifest lists
GHCR_URL = "https://ghcr.io"

# Largest page size the packages API allows
PER_PAGE = 100

# Seconds, for each individual query or delete request
TIMEOUT = 30

OWNER_TYPES = ("orgs", "users")

# Deletes in flight at once, GitHub rate-limits bursts of mutating requests
MAX_CONCURRENT = 2

MANIFEST_ACCEPT = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

DeletionPlan = namedtuple("DeletionPlan", ["untagged_digests",
                                           "deprecated_tags",
                                           "kept_digests",
                                           "protected_tags"])

logger = logging.getLogger("tag_retention")


def dbg(msg: str) -> None:
    """Shorthand for calling logger.debug()."""
    caller = extract_stack(limit=2)[0]
    logger.debug(msg, extra=dict(loc=f'(line {caller.lineno})'))


def warn(msg: str) -> None:
    """Shorthand for calling logger.warning()."""
    caller = extract_stack(limit=2)[0]
    logger.warning(msg, extra=dict(loc=f'(line {caller.lineno})'))


def err(msg: str) -> None:
    """Log an error message and exit non-zero."""
    caller = extract_stack(limit=2)[0]
    logger.error(msg, extra=dict(loc=f'(line {caller.lineno})'))
    sys.exit(1)


def init_logging(debug: bool = False) -> None:
    """Attach a stderr handler, at most once.  loc is added at call time."""
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('{levelname}: {message} {loc}', style='{'))
        logger.addHandler(handler)
    if debug:
        logger.setLevel(logging.DEBUG)
        dbg("Debugging enabled")
    else:
        logger.setLevel(logging.WARNING)


##################
#                #
# Keep-set rules #
#                #
##################


def split_tags(value) -> list:
    """Return ordered, de-duplicated list of tags from a string or list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    result = []
    for item in value:
        for tag in str(item).replace(",", " ").split():
            if tag not in result:
                result.append(tag)
    return result


def load_releases(matrix_path, key: str = "release") -> list:
    """
    Return list of supported release strings from a matrix file.

    The file is normally the JSON used to fan-out build jobs, but since
    JSON is a subset of YAML either may be used.  Recognized layouts are
    a plain list of releases, a list of matrix items each holding 'key',
    a GitHub Actions style mapping with an 'include' list of such items,
    or a mapping with a list under 'key'.
    """
    with open(matrix_path) as matrix_file:
        matrix = yaml.safe_load(matrix_file)
    if isinstance(matrix, dict):
        if "include" in matrix:
            matrix = matrix["include"]
        elif key in matrix:
            matrix = matrix[key]
    if not isinstance(matrix, list):
        raise ValueError(f"Expecting a list of releases in '{matrix_path}',"
                         f" not a {matrix.__class__.__name__}")
    releases = []
    for item in matrix:
        if isinstance(item, dict):
            if key not in item:
                raise ValueError(f"Matrix item {item} in '{matrix_path}' has no '{key}' key")
            item = item[key]
        # Unquoted numbers are accepted, quoting is needed to keep "1.10" intact
        if isinstance(item, (dict, list)) or item is None:
            raise ValueError(f"Unsupported release value {item!r} in '{matrix_path}'")
        item = str(item)
        if item not in releases:
            releases.append(item)
    dbg(f"Loaded {len(releases)} releases from '{matrix_path}'")
    return releases


def keep_set(supported_releases: Iterable[str], extra_tags: Iterable[str]) -> frozenset:
    """Return the set of tags which must survive cleanup."""
    return frozenset(supported_releases) | frozenset(extra_tags)


def reconcile(supported_releases: Sequence[str],
              extra_tags: Sequence[str],
              tag_to_digest: Mapping[str, str],
              digest_tags: Mapping[str, Sequence[str]],
              references: Optional[Mapping[str, Iterable[str]]] = None) -> DeletionPlan:
    """
    Compute which digests and tags may be deleted.

    tag_to_digest covers every tag present in the registry, digest_tags
    covers every digest (tagged or not).  The optional references maps a
    digest onto the digests it points at (i.e. the platform manifests of a
    manifest list), anything reachable from a kept tag is kept as well.

    Deprecated tags sharing a digest with a kept tag are moved into
    protected_tags: deleting their package version would also delete the
    kept tag.
    """
    keep = keep_set(supported_releases, extra_tags)
    all_tags = frozenset(tag_to_digest)
    kept_digests = set(tag_to_digest[tag] for tag in keep & all_tags)

    if references:
        pending = list(kept_digests)
        while pending:
            for child in references.get(pending.pop(), ()):
                if child not in kept_digests:
                    kept_digests.add(child)
                    pending.append(child)

    # A zero-tag digest can't be kept by a tag, but it may have been
    # re-tagged (or become a child of a kept list) since the listing.
    untagged = frozenset(digest for digest, tags in digest_tags.items()
                         if not tags and digest not in kept_digests)

    deprecated = all_tags - keep
    protected = frozenset(tag for tag in deprecated if tag_to_digest[tag] in kept_digests)
    return DeletionPlan(untagged_digests=untagged,
                        deprecated_tags=deprecated - protected,
                        kept_digests=frozenset(kept_digests),
                        protected_tags=protected)


#####################
#                   #
# Registry contents #
#                   #
#####################


def tags_for(version):
    """Return list of tags on a package version record."""
    return version.get("metadata", {}).get("container", {}).get("tags", []) or []


def digest_for(version):
    """Return the manifest digest of a package version record."""
    return version["name"]


def updated_at(version):
    """Return timezone-aware datetime a version was last changed, or None."""
    timestamp = version.get("updated_at") or version.get("created_at")
    if not timestamp:
        return None
    return dateutil.parser.isoparse(timestamp)


def inventory(versions, min_age: Optional[timedelta] = None, now: Optional[datetime] = None):
    """
    Return tag_to_digest, digest_tags and digest_ids maps for package versions.

    When min_age is given, untagged versions changed within that period
    (or of unknown age) are left out entirely.  Multi-arch pushes upload
    their untagged platform manifests before the tagged list.
    """
    cutoff = None
    if min_age:
        if now is None:
            now = datetime.now(dateutil.tz.UTC)
        cutoff = now - min_age
    tag_to_digest = dict()
    digest_tags = dict()
    digest_ids = dict()
    for version in versions:
        digest = digest_for(version)
        tags = tags_for(version)
        if not tags and cutoff is not None:
            changed = updated_at(version)
            if changed is None or changed > cutoff:
                dbg(f"Ignoring recent untagged version {version['id']} ({digest})")
                continue
        digest_ids[digest] = version["id"]
        digest_tags[digest] = list(tags)
        for tag in tags:
            tag_to_digest[tag] = digest
    dbg(f"Inventory has {len(digest_tags)} digests and {len(tag_to_digest)} tags")
    return tag_to_digest, digest_tags, digest_ids


def deletion_targets(plan: DeletionPlan, tag_to_digest, digest_ids):
    """Return dictionary of version ID to digest for every version to delete."""
    digests = set(plan.untagged_digests)
    digests.update(tag_to_digest[tag] for tag in plan.deprecated_tags)
    clash = digests & plan.kept_digests
    if clash:
        raise RuntimeError(f"Refusing to delete kept digests: {sorted(clash)}")
    return {digest_ids[digest]: digest for digest in digests}


class GHCRPackage:
    """Represent one container package in the GitHub Container Registry."""

    def __init__(self, owner, name, token, owner_type="orgs"):
        """Initialize with owner (org. or user), package name and an API token."""
        if owner_type not in OWNER_TYPES:
            raise ValueError(f"Expecting owner type to be one of {OWNER_TYPES}, not '{owner_type}'")
        self.owner = owner
        self.name = name
        self.owner_type = owner_type
        self._token = token
        self.headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": GH_API_VERSION,
        }

    def __str__(self):
        return f"{self.owner}/{self.name}"

    @property
    def versions_url(self):
        """REST API URL for the package's versions."""
        package = quote(self.name, safe="")
        return f"{GH_API_URL}/{self.owner_type}/{self.owner}/packages/container/{package}/versions"

    def versions(self):
        """Return list of all package version records."""
        result = []
        page = 1
        while True:
            params = dict(per_page=PER_PAGE, page=page)
            response = requests.get(self.versions_url, headers=self.headers,
                                    params=params, timeout=TIMEOUT)
            if response.status_code == 404:
                raise RuntimeError(f"Package '{self}' not found or access denied")
            response.raise_for_status()
            data = response.json()
            if not data:
                break
            result.extend(data)
            page += 1
        dbg(f"Retrieved {len(result)} versions of '{self}'")
        return result

    def manifest_children(self, digest):
        """Return list of digests a manifest list references, empty for plain images."""
        # The registry accepts a base64 encoded token in place of a login
        ghcr_token = base64.b64encode(self._token.encode()).decode()
        url = f"{GHCR_URL}/v2/{self.owner.lower()}/{self.name.lower()}/manifests/{digest}"
        headers = {"Authorization": f"Bearer {ghcr_token}", "Accept": MANIFEST_ACCEPT}
        response = requests.get(url, headers=headers, timeout=TIMEOUT)
        response.raise_for_status()
        manifest = response.json()
        return [item["digest"] for item in manifest.get("manifests", []) if "digest" in item]

    def fetch_references(self, digests):
        """
        Return dictionary of each digest to the list of digests it references.

        Children are fetched in turn, so nested manifest lists (e.g. an
        index of indexes) are followed all the way down.
        """
        result = dict()
        pending = sorted(digests, reverse=True)
        while pending:
            digest = pending.pop()
            if digest in result:
                continue
            result[digest] = self.manifest_children(digest)
            if result[digest]:
                dbg(f"Manifest list {digest} references {len(result[digest])} manifests")
                pending.extend(child for child in reversed(result[digest])
                               if child not in result)
        return result

    async def delete_version(self, session, version_id):
        """Delete a package version, an already missing version is not an error."""
        url = f"{self.versions_url}/{version_id}"
        async with session.delete(url, headers=self.headers,
                                  timeout=ClientTimeout(total=TIMEOUT)) as response:
            if response.status not in (204, 404):
                detail = await response.text()
                raise RuntimeError(f"Delete failed for version {version_id}:"
                                   f" {response.status} {detail}")
        return version_id


async def delete_one(package, session, limit, version_id, digest, results):
    """Delete a single version, recording rather than raising any failure."""
    try:
        async with limit:
            await package.delete_version(session, version_id)
    except (ClientError, RuntimeError, asyncio.TimeoutError) as xcpt:
        warn(f"Skipping version {version_id} ({digest}): {xcpt}")
        results["failed"].append(digest)
    else:
        dbg(f"Deleted version {version_id} ({digest})")
        results["deleted"].append(digest)


async def delete_versions(package, targets, max_concurrent=MAX_CONCURRENT):
    """Delete all targets (version ID -> digest), at most max_concurrent at once."""
    if max_concurrent < 1:
        raise ValueError(f"Expecting max_concurrent to be at least 1, not {max_concurrent}")
    results = {"deleted": [], "failed": []}
    limit = asyncio.Semaphore(max_concurrent)
    async with ClientSession() as session:
        # Retain a reference to all tasks so they aren't garbage-collected
        tasks = [asyncio.create_task(delete_one(package, session, limit,
                                                version_id, digest, results))
                 for version_id, digest in sorted(targets.items())]
        await asyncio.gather(*tasks)
    results["deleted"].sort()
    results["failed"].sort()
    return results


##########################
#                        #
# Reporting and CLI glue #
#                        #
##########################


def format_plan(package, plan, keep, dry_run=False):
    """Return list of human-readable lines describing plan."""
    lines = [f"Package {package}",
             f"  Keep-set: {' '.join(sorted(keep)) or '(empty)'}"]
    sections = (("Deprecated tags", plan.deprecated_tags),
                ("Protected tags (digest shared with a kept tag)", plan.protected_tags),
                ("Untagged digests", plan.untagged_digests))
    for title, items in sections:
        lines.append(f"  {title}: {len(items)}")
        lines.extend(f"    {item}" for item in sorted(items))
    if dry_run:
        lines.append("  Dry-run: nothing will be deleted")
    return lines


def write_summary(summary_path, package, plan, keep, results, dry_run=False):
    """Append a markdown report of plan and results to summary_path."""
    def bullets(items, fmt="- `{0}`"):
        return [fmt.format(item) for item in sorted(items)] or ["- None"]

    lines = [f"## Tag retention: {package}", ""]
    lines.append(f"- Keep-set: {', '.join(f'`{tag}`' for tag in sorted(keep)) or 'empty'}")
    if dry_run:
        lines.append("- Dry-run, nothing was deleted.")
    lines.extend(["", "### Deprecated tags"] + bullets(plan.deprecated_tags))
    lines.extend(["", "### Protected tags"] + bullets(plan.protected_tags))
    lines.extend(["", "### Untagged digests"] + bullets(plan.untagged_digests))
    if results["failed"]:
        lines.extend(["", "### Failed deletions"] + bullets(results["failed"]))
    with open(summary_path, "a") as summary:
        summary.write("\n".join(lines) + "\n")


def main(package, supported_releases, extra_tags, dry_run=False,
         min_age=None, follow_manifests=True, summary_path=None,
         max_concurrent=MAX_CONCURRENT):
    """Query package, reconcile against the keep-set and delete the difference."""
    keep = keep_set(supported_releases, extra_tags)
    if not keep:
        warn("Keep-set is empty, every tagged version is deprecated")

    # Any query failure propagates, there's no plan w/o a complete inventory
    tag_to_digest, digest_tags, digest_ids = inventory(package.versions(), min_age)
    references = None
    if follow_manifests:
        kept = set(tag_to_digest[tag] for tag in keep if tag in tag_to_digest)
        references = package.fetch_references(kept)

    plan = reconcile(supported_releases, extra_tags, tag_to_digest, digest_tags, references)
    targets = deletion_targets(plan, tag_to_digest, digest_ids)
    for line in format_plan(package, plan, keep, dry_run):
        sys.stdout.write(f"{line}\n")

    results = {"plan": plan, "deleted": [], "failed": []}
    if targets and not dry_run:
        results.update(asyncio.run(delete_versions(package, targets,
                                                      max_concurrent=max_concurrent)))
        sys.stdout.write(f"Deleted {len(results['deleted'])} versions,"
                         f" {len(results['failed'])} failed\n")

    if summary_path:
        write_summary(summary_path, package, plan, keep, results, dry_run)
    return results


def env_defaults():
    """Return dictionary of option defaults read from env. vars."""
    return dict(
        dry_run=env.bool('DRY_RUN', default=False),
        owner=env.str('OWNER', default=env.str('GITHUB_REPOSITORY_OWNER', default='')),
        owner_type=env.str('OWNER_TYPE', default='orgs'),
        package=env.str('PACKAGE', default=''),
        matrix=env.str('MATRIX_FILE', default='') or None,
        extra_tags=env.str('EXTRA_TAGS', default=''),
        min_age_hours=env.int('MIN_AGE_HOURS', default=0),
        max_concurrent=env.int('MAX_CONCURRENT', default=MAX_CONCURRENT),
        summary_path=env.str('GITHUB_STEP_SUMMARY', default='') or None,
    )


def get_args(argv):
    """Return parsed argument namespace object, defaults taken from env. vars."""
    parser = argparse.ArgumentParser(prog="tag-retention", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('--debug', action='store_true',
                        help="Enable output of debugging messages")
    parser.add_argument('-d', '--dry-run', dest='dry_run', action='store_true',
                        help="Show what would be deleted, don't delete anything ($DRY_RUN)")
    parser.add_argument('--owner',
                        help="Package owner ($OWNER or $GITHUB_REPOSITORY_OWNER)")
    parser.add_argument('--owner-type', choices=OWNER_TYPES,
                        help="Whether the owner is an organization or a user ($OWNER_TYPE)")
    parser.add_argument('--package',
                        help="Container package name ($PACKAGE)")
    parser.add_argument('--matrix', metavar='<filepath>',
                        help="JSON matrix file listing supported releases ($MATRIX_FILE)")
    parser.add_argument('--matrix-key', default='release', metavar='<key>',
                        help="Key holding the release in each matrix item (default: release)")
    parser.add_argument('--release', action='append', default=[], metavar='<tag>',
                        help="Supported release to keep, may be repeated")
    parser.add_argument('--extra-tags', metavar='"<tag> ..."',
                        help="Space or comma separated tags to keep as well ($EXTRA_TAGS)")
    parser.add_argument('--min-age-hours', type=int,
                        help="Leave alone untagged versions younger than this ($MIN_AGE_HOURS)")
    parser.add_argument('--max-concurrent', type=int,
                        help=f"Most deletes in flight at once (default: {MAX_CONCURRENT},"
                             f" $MAX_CONCURRENT)")
    parser.add_argument('--no-follow-manifests', dest='follow_manifests',
                        action='store_false', default=True,
                        help="Don't protect platform manifests of kept multi-arch images")

    # Bad env. values must end up as a usage error, not a traceback
    try:
        parser.set_defaults(**env_defaults())
    except (ConfigurationError, ValueError) as xcpt:
        parser.error(f"Invalid env. var. value: {xcpt}")
    parsed = parser.parse_args(args=argv[1:])

    for opt in ('owner', 'package'):
        if not getattr(parsed, opt):
            parser.error(f"Expecting --{opt} or its env. var. to be non-empty")
    if parsed.owner_type not in OWNER_TYPES:
        parser.error(f"Expecting $OWNER_TYPE to be one of {OWNER_TYPES}")
    if parsed.min_age_hours < 0:
        parser.error("Expecting --min-age-hours to be zero or greater")
    if parsed.max_concurrent < 1:
        parser.error("Expecting --max-concurrent to be at least 1")
    parsed.token = env.str('GITHUB_TOKEN', default='')
    if not parsed.token.strip():
        parser.error("Expecting $GITHUB_TOKEN to be defined/non-empty")
    return parsed


def cli(argv=None):
    """Console entry point, exits non-zero if the plan could not be computed."""
    args = get_args(sys.argv if argv is None else argv)
    init_logging(args.debug)
    try:
        releases = split_tags(args.release)
        if args.matrix:
            releases.extend(r for r in load_releases(args.matrix, args.matrix_key)
                            if r not in releases)
        package = GHCRPackage(args.owner, args.package, args.token, args.owner_type)
        main(package, releases, split_tags(args.extra_tags),
             dry_run=args.dry_run,
             min_age=timedelta(hours=args.min_age_hours),
             follow_manifests=args.follow_manifests,
             summary_path=args.summary_path,
             max_concurrent=args.max_concurrent)
    except (OSError, RuntimeError, ValueError, yaml.YAMLError) as xcpt:
        # requests.RequestException is an OSError
        err(f"{xcpt.__class__.__name__}: {xcpt}")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
