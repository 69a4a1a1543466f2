import httpx
import pytest

from sbaudit.catalog import DiscoveryError, Target, TargetCatalog, TargetKind

from conftest import make_config


def table(name):
    return Target(name, TargetKind.TABLE)


def test_allowlist_strips_comments_whitespace_and_blanks():
    lines = ["users", "  orders  # legacy table", "", "# only a comment", "users", "\tprofiles\t"]
    assert TargetCatalog.from_allowlist(lines) == {table("users"), table("orders"), table("profiles")}


def test_allowlist_dedupes_by_exact_string():
    assert TargetCatalog.from_allowlist(["Users", "users"]) == {table("Users"), table("users")}


def test_discovery_extracts_tables_and_rpcs():
    document = {'paths': {
        '/': {}, '/users': {}, '/orders': {}, '/rpc': {},
        '/rpc/get_secret': {}, '/rpc/add_item': {}, '/users/extra': {}, '/rpc/a/b': {}
    }}
    tables, rpcs = TargetCatalog.from_discovery(document)
    assert tables == [table("orders"), table("users")]
    assert rpcs == [Target("add_item", TargetKind.RPC), Target("get_secret", TargetKind.RPC)]


@pytest.mark.parametrize("document", [{}, {'definitions': {}}, {'paths': []}, [], None])
def test_discovery_without_paths_raises(document):
    with pytest.raises(DiscoveryError):
        TargetCatalog.from_discovery(document)


def test_merge_is_idempotent_and_sorted():
    allowlist = TargetCatalog.from_allowlist(["users", "orders"])
    discovered, _ = TargetCatalog.from_discovery({'paths': {'/users': {}, '/accounts': {}}})

    once = TargetCatalog.merge(allowlist, discovered)
    twice = TargetCatalog.merge(once, allowlist, discovered)

    assert once == twice
    assert once == [table("accounts"), table("orders"), table("users")]


@pytest.mark.asyncio
async def test_build_allowlist_only_makes_no_requests(api, executor_for):
    config = make_config(allowlist=["users", "orders"])
    catalog = await TargetCatalog.build(config, executor_for(config))
    assert catalog.tables == (table("orders"), table("users"))
    assert api.requests == []


@pytest.mark.asyncio
async def test_build_merges_discovery_with_allowlist(api, executor_for):
    api.add('GET', '/rest/v1/', json={'paths': {'/accounts': {}, '/users': {}, '/rpc/ping': {}}})
    config = make_config(allowlist=["users", "orders"], discover=True)

    catalog = await TargetCatalog.build(config, executor_for(config))

    assert [t.name for t in catalog.tables] == ["accounts", "orders", "users"]
    assert [t.name for t in catalog.rpcs] == ["ping"]
    assert not catalog.discovery_degraded
    assert api.calls('GET', '/rest/v1/', 'anon')


@pytest.mark.asyncio
async def test_rpc_probe_discovery_does_not_add_tables(api, executor_for):
    api.add('GET', '/rest/v1/', json={'paths': {'/accounts': {}, '/rpc/ping': {}}})
    config = make_config(allowlist=["users"], rpc_probe=True)

    catalog = await TargetCatalog.build(config, executor_for(config))

    assert [t.name for t in catalog.tables] == ["users"]
    assert [t.name for t in catalog.rpcs] == ["ping"]


@pytest.mark.asyncio
async def test_failed_discovery_degrades_to_allowlist(api, executor_for):
    api.add('GET', '/rest/v1/', status=401, json={'message': 'no'})
    config = make_config(allowlist=["users"], discover=True)

    catalog = await TargetCatalog.build(config, executor_for(config))

    assert catalog.tables == (table("users"),)
    assert catalog.discovery_degraded
    assert any("401" in note for note in catalog.notes)


@pytest.mark.asyncio
async def test_failed_discovery_without_allowlist_is_fatal(api, executor_for):
    api.add('GET', '/rest/v1/', json={'swagger': '2.0'})
    config = make_config(discover=True)

    with pytest.raises(DiscoveryError):
        await TargetCatalog.build(config, executor_for(config))


@pytest.mark.asyncio
async def test_discovery_transport_error_raises(api, executor_for):
    api.add('GET', '/rest/v1/', error=httpx.ConnectError)
    config = make_config(discover=True)

    with pytest.raises(DiscoveryError, match="transport"):
        await TargetCatalog.discover(executor_for(config))


@pytest.mark.asyncio
async def test_discovery_non_json_body_raises(api, executor_for):
    api.add('GET', '/rest/v1/', content=b"<html>nope</html>")
    config = make_config(discover=True)

    with pytest.raises(DiscoveryError, match="not JSON"):
        await TargetCatalog.discover(executor_for(config))


@pytest.mark.asyncio
async def test_list_buckets_reports_public_flags(api, executor_for):
    api.add('GET', '/storage/v1/bucket', json=[
        {'id': 'avatars', 'name': 'avatars', 'public': True},
        {'id': 'private-docs', 'name': 'private-docs', 'public': False},
    ])
    config = make_config(allowlist=["users"])

    listing = await TargetCatalog.list_buckets(executor_for(config))

    assert listing.available
    assert [b.name for b in listing.buckets] == ["avatars", "private-docs"]
    assert listing.public_buckets == ["avatars"]
    assert api.calls('GET', '/storage/v1/bucket', 'anon')
    assert not api.calls(tier='noauth')


@pytest.mark.asyncio
async def test_list_buckets_failure_is_best_effort(api, executor_for):
    api.add('GET', '/storage/v1/bucket', status=403, json={'message': 'denied'})
    config = make_config(allowlist=["users"])

    listing = await TargetCatalog.list_buckets(executor_for(config))

    assert not listing.available
    assert listing.buckets == []
    assert listing.error == "HTTP 403"


def test_catalog_with_buckets_returns_new_catalog():
    catalog = TargetCatalog(tables=[table("users")])
    extended = catalog.with_buckets([Target("avatars", TargetKind.BUCKET)])
    assert catalog.buckets == ()
    assert extended.counts() == {'tables': 1, 'rpcs': 0, 'buckets': 1}
