# tests/utils/test_cloud_init.py
import pytest
import yaml

from vmplane.utils.cloud_init import render_meta_data, render_user_data

def test_meta_data():
    assert yaml.safe_load(render_meta_data("i-1", "web")) == {"instance-id": "i-1", "local-hostname": "web"}

def test_keys_only_produce_cloud_config():
    user_data = render_user_data(["ssh-ed25519 AAAA a@b", "  "])

    assert user_data.startswith("#cloud-config\n")
    assert yaml.safe_load(user_data) == {"ssh_authorized_keys": ["ssh-ed25519 AAAA a@b"]}

def test_keys_merge_into_existing_cloud_config():
    given = "#cloud-config\npackages: [nginx]\nssh_authorized_keys:\n  - ssh-ed25519 AAAA a@b\n"

    user_data = render_user_data(["ssh-ed25519 AAAA a@b", "ssh-ed25519 BBBB c@d"], given)

    assert yaml.safe_load(user_data) == {
        "packages": ["nginx"],
        "ssh_authorized_keys": ["ssh-ed25519 AAAA a@b", "ssh-ed25519 BBBB c@d"],
    }

def test_script_user_data_passes_through_without_keys():
    script = "#!/bin/sh\necho hello\n"

    assert render_user_data([], script) == script

def test_script_user_data_cannot_carry_keys():
    with pytest.raises(ValueError):
        render_user_data(["ssh-ed25519 AAAA a@b"], "#!/bin/sh\necho hello\n")

def test_cloud_config_must_be_mapping():
    with pytest.raises(ValueError):
        render_user_data([], "#cloud-config\n- just\n- a list\n")
