import pytest

from pgupgrader.errors import ValidationError
from pgupgrader.services.naming import ResourceNamer


def test_build_derives_all_names_from_versions_and_nonce():
    context = ResourceNamer().build("13", "16.4", run_id="abc123")

    assert context.run_id == "abc123"
    assert context.network_name == "pgupgrader_abc123_net"
    assert context.old_container_name == "pgupgrader_abc123_old_13"
    assert context.dump_container_name == "pgupgrader_abc123_dump_16-4"
    assert context.new_container_name == "pgupgrader_abc123_new_16-4"
    assert context.dump_volume_name == "pgupgrader_abc123_dumpvol"


def test_build_is_unique_per_run():
    namer = ResourceNamer()

    first = namer.build("13", "16")
    second = namer.build("13", "16")

    assert first.run_id != second.run_id
    assert first.network_name != second.network_name
    assert first.old_container_name != second.old_container_name


def test_all_names_are_distinct_within_a_run():
    context = ResourceNamer().build("16", "17", run_id="abc123")
    names = [
        context.network_name,
        context.old_container_name,
        context.dump_container_name,
        context.new_container_name,
        context.dump_volume_name,
    ]

    assert len(set(names)) == len(names)


@pytest.mark.parametrize("bad_version", ["", "  ", "13; rm -rf /", "16 --privileged", "-13", "a/b"])
def test_unsafe_versions_are_rejected(bad_version):
    with pytest.raises(ValidationError, match="Invalid version identifier"):
        ResourceNamer().build(bad_version, "16")


def test_image_tag_style_versions_are_accepted():
    context = ResourceNamer().build("13.14-bookworm", "16_alpine", run_id="abc123")

    assert context.old_container_name == "pgupgrader_abc123_old_13-14-bookworm"
    assert context.new_container_name == "pgupgrader_abc123_new_16-alpine"


def test_owns_matches_prefix_and_run():
    namer = ResourceNamer()
    context = namer.build("13", "16", run_id="abc123")

    assert namer.owns(context.network_name)
    assert namer.owns(context.network_name, run_id="abc123")
    assert not namer.owns(context.network_name, run_id="zzz999")
    assert not namer.owns("postgres")
