import pytest

from vpcipam.crd import API_VERSION, KIND, ENIConfig, ENIConfigSpec


SAMPLE = {
    "apiVersion": "crd.k8s.amazonaws.com/v1alpha1",
    "kind": "ENIConfig",
    "metadata": {"name": "group1-pod-netconfig"},
    "spec": {"securityGroups": ["sg1-id", "sg2-id"], "subnet": "subnet1"},
}


def test_from_dict_reads_spec():
    config = ENIConfig.from_dict(SAMPLE)
    assert config.spec.security_groups == ["sg1-id", "sg2-id"]
    assert config.spec.subnet == "subnet1"
    assert config.name == "group1-pod-netconfig"
    assert config.api_version == API_VERSION
    assert config.kind == KIND


def test_round_trip():
    config = ENIConfig.from_dict(SAMPLE)
    assert ENIConfig.from_dict(config.to_dict()) == config


def test_to_dict_keys():
    config = ENIConfig(spec=ENIConfigSpec(["sg1-id"], "subnet1"), metadata={"name": "x"})
    data = config.to_dict()
    assert data["spec"] == {"securityGroups": ["sg1-id"], "subnet": "subnet1"}
    assert data["apiVersion"] == "crd.k8s.amazonaws.com/v1alpha1"
    assert data["status"] == {}


def test_missing_spec_gives_empty_defaults():
    config = ENIConfig.from_dict({"metadata": {"name": "empty"}})
    assert config.spec == ENIConfigSpec()
    assert config.name == "empty"
    assert "apiVersion" not in config.to_dict()


@pytest.mark.parametrize(
    "data",
    [
        {"spec": {"securityGroups": "sg1-id"}},
        {"spec": {"securityGroups": [1]}},
        {"spec": {"subnet": 5}},
        {"spec": []},
        {"metadata": "name"},
    ],
)
def test_wrong_types_are_rejected(data):
    with pytest.raises(TypeError):
        ENIConfig.from_dict(data)