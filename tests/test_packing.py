from farm.capacity import free_capacity, usable_sources, usable_targets
from farm.packing import pack, sort_candidates
from farm.state import NodeSnapshot, OperationKind


def node(name, total, used=0.0, cores=1, home=False, access=True, **kwargs):
    return NodeSnapshot(name, total, used, cores=cores, is_home=home, has_access=access, **kwargs)


def test_two_workers_partial_allocation():
    small, big = node("small", 16), node("big", 64)
    alloc = pack(OperationKind.HARVEST, [small, big], thread_cost=2.0, needed=50)

    assert [(a.node.name, a.threads) for a in alloc.assignments] == [("big", 32), ("small", 8)]
    assert alloc.threads == 40
    assert alloc.reached == 40
    assert not alloc.fulfilled


def test_stops_once_requirement_is_met():
    alloc = pack(OperationKind.HARVEST, [node("a", 64), node("b", 64)], thread_cost=2.0, needed=10)
    assert [(a.node.name, a.threads) for a in alloc.assignments] == [("a", 10)]
    assert alloc.fulfilled


def test_parallelism_bonus_counts_towards_fortify():
    wide = node("wide", 20, cores=17)
    alloc = pack(OperationKind.FORTIFY, [wide], thread_cost=1.0, needed=10)
    assert alloc.assignments[0].threads == 5
    assert alloc.reached == 10
    assert alloc.fulfilled


def test_fortify_and_suppress_prefer_free_times_cores():
    narrow, wide = node("narrow", 10), node("wide", 6, cores=4)
    assert [n.name for n in sort_candidates(OperationKind.SUPPRESS, [narrow, wide])] == ["wide", "narrow"]
    assert [n.name for n in sort_candidates(OperationKind.HARVEST, [narrow, wide])] == ["narrow", "wide"]


def test_home_reserve_applies_only_to_home():
    home = node("home", 20, home=True)
    worker = node("w", 20)
    assert free_capacity(home, 16) == 4
    assert free_capacity(worker, 16) == 20
    assert free_capacity(node("full", 8, used=10), 0) == 0

    alloc = pack(OperationKind.HARVEST, [home], thread_cost=2.0, needed=10, home_reserved=16)
    assert alloc.threads == 2


def test_packing_is_deterministic_and_stable():
    nodes = [node("a", 32), node("b", 32), node("c", 8)]
    first = pack(OperationKind.HARVEST, nodes, 1.75, 30)
    second = pack(OperationKind.HARVEST, nodes, 1.75, 30)
    assert first == second
    # Ties keep discovery order
    assert first.assignments[0].node.name == "a"


def test_nothing_to_pack():
    assert pack(OperationKind.HARVEST, [node("a", 32)], 1.75, 0).assignments == []
    assert pack(OperationKind.HARVEST, [node("a", 1)], 1.75, 5).assignments == []


def test_usable_nodes():
    nodes = [
        node("home", 64, home=True),
        node("locked", 32, access=False),
        node("busy", 8, used=8),
        node("target", 0, max_yield=1e6, required_level=10),
        node("hard", 0, max_yield=1e6, required_level=200),
    ]
    assert [n.name for n in usable_sources(nodes, 16)] == ["home"]
    assert [n.name for n in usable_targets(nodes, 100)] == ["target"]
