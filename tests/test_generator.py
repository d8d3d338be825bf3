import json

import pytest

from multusd.generator import (
    MultusConf,
    check_version_compatibility,
    extract_capabilities,
    find_master_plugin,
    parse_multus_config,
)

PRIMARY_CNI_NAME = "myCNI"
CNI_VERSION = "0.4.0"
PRIMARY_CNI_FILE = "/etc/cni/net.d/10-flannel.conf"


@pytest.fixture
def multus_config(tmp_path):
    path = tmp_path / "10-testcni.conf"
    path.write_text(
        json.dumps(
            {"name": PRIMARY_CNI_NAME, "cniVersion": CNI_VERSION, "clusterNetwork": PRIMARY_CNI_FILE}
        )
    )
    return parse_multus_config(path)


def _expected(capabilities=None):
    expected = {
        "cniVersion": "0.4.0",
        "clusterNetwork": PRIMARY_CNI_FILE,
        "name": "multus-cni-network",
        "type": "multus-shim",
    }
    if capabilities is not None:
        expected["capabilities"] = capabilities
    return expected


def test_basic_multus_config(multus_config):
    assert json.loads(multus_config.generate()) == _expected()


@pytest.mark.parametrize(
    "document, capabilities",
    [
        ('{"capabilities": {"portMappings": true}}', {"portMappings": True}),
        (
            '{"capabilities": {"portMappings": true, "tuning": true}}',
            {"portMappings": True, "tuning": True},
        ),
        ('{"capabilities": {"portMappings": true, "tuning": false}}', {"portMappings": True}),
        (
            '{"plugins": [ {"capabilities": {"portMappings": true, "tuning": true}} ] }',
            {"portMappings": True, "tuning": True},
        ),
        (
            '{"plugins": [{"capabilities": {"portMappings": true}}, '
            '{"capabilities": {"tuning": true}}]}',
            {"portMappings": True, "tuning": True},
        ),
        (
            '{"plugins": [{"capabilities": {"portMappings": true}}, '
            '{"capabilities": {"tuning": false}}]}',
            {"portMappings": True},
        ),
    ],
)
def test_multus_config_with_capabilities(multus_config, document, capabilities):
    multus_config.set_capabilities(json.loads(document))
    assert json.loads(multus_config.generate()) == _expected(capabilities)


def test_generate_exact_wire_form(tmp_path):
    conf = MultusConf(cni_version="0.4.0", name="multus-cni-network", cluster_network="/x/00-mycni.conf")
    assert conf.generate() == (
        '{"cniVersion":"0.4.0","name":"multus-cni-network",'
        '"clusterNetwork":"/x/00-mycni.conf","type":"multus-shim"}'
    )


def test_generate_flushes_daemon_only_fields():
    conf = MultusConf(
        cni_version="0.4.0",
        name="n",
        multus_master_cni="00-mycni.conf",
        multus_autoconfig_dir="/auto",
        readiness_indicator_file="/ready",
        force_cni_version=True,
    )
    data = json.loads(conf.generate())
    for key in ("cniConfigDir", "multusConfigFile", "multusAutoconfigDir", "multusMasterCNI",
                "readinessindicatorfile", "forceCNIVersion"):
        assert key not in data
    assert conf.multus_master_cni == ""
    assert conf.force_cni_version is False


def test_parse_applies_defaults(multus_config):
    assert multus_config.multus_config_file == "auto"
    assert multus_config.type == "multus-shim"
    assert multus_config.cni_config_dir == "/etc/cni/net.d"
    assert multus_config.name == "multus-cni-network"


def test_from_dict_matches_keys_case_insensitively():
    conf = MultusConf.from_dict({"MultusMasterCni": "00-mycni.conf", "cniversion": "1.0.0"})
    assert conf.multus_master_cni == "00-mycni.conf"
    assert conf.cni_version == "1.0.0"


def test_from_dict_rejects_wrong_type():
    with pytest.raises(ValueError, match="namespaceIsolation"):
        MultusConf.from_dict({"namespaceIsolation": "yes"})


def test_parse_missing_file(tmp_path):
    with pytest.raises(OSError, match="ParseMultusConfig failed"):
        parse_multus_config(tmp_path / "missing.conf")


def test_parse_invalid_json(tmp_path):
    path = tmp_path / "bad.conf"
    path.write_text("{")
    with pytest.raises(ValueError, match="failed to unmarshall the daemon configuration"):
        parse_multus_config(path)


def test_extract_capabilities():
    assert extract_capabilities({"capabilities": {"portMappings": True, "tuning": False}}) == [
        "portMappings"
    ]
    assert extract_capabilities({"name": "x"}) == []
    assert extract_capabilities("nope") == []


def test_set_capabilities_rejects_non_object(multus_config):
    with pytest.raises(ValueError, match="couldn't get cni config from delegate"):
        multus_config.set_capabilities(["not", "a", "dict"])


def test_version_incompatibility():
    conf = MultusConf(cni_version="0.4.0")
    with pytest.raises(
        ValueError,
        match="^delegate cni version is 0.3.1 while top level cni version is 0.4.0$",
    ):
        check_version_compatibility(conf, {"cniVersion": "0.3.1"})
    assert check_version_compatibility(conf, {"cniVersion": "1.0.0"}) is None


def test_version_check_skipped_for_old_multus():
    conf = MultusConf(cni_version="0.3.1")
    assert check_version_compatibility(conf, "anything") is None
    with pytest.raises(ValueError, match="couldn't get cni version of delegate"):
        check_version_compatibility(MultusConf(cni_version="0.4.0"), "anything")


def test_version_check_bad_top_level_version():
    with pytest.raises(ValueError, match="couldn't get top level cni version"):
        check_version_compatibility(MultusConf(cni_version="bad"), {"cniVersion": "0.4.0"})


def test_find_master_plugin_picks_first_sorted(tmp_path):
    for name in ("00-multus.conf", "20-b.conflist", "10-a.conf", "readme.txt"):
        (tmp_path / name).write_text("{}")
    assert find_master_plugin(tmp_path, 1, 0) == "10-a.conf"


def test_find_master_plugin_gives_up(tmp_path):
    (tmp_path / "00-multus.conf").write_text("{}")
    with pytest.raises(FileNotFoundError, match="could not find a plugin configuration"):
        find_master_plugin(tmp_path, 2, 0)


def test_find_master_plugin_missing_dir(tmp_path):
    with pytest.raises(OSError, match="error when listing the CNI plugin configurations"):
        find_master_plugin(tmp_path / "missing", 1, 0)