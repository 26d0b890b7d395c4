import os
import stat

import pytest

from portainerstore.errors import SecretStoreFailure
from portainerstore.secrets import SecretStore


def test_set_get_remove(secrets):
    assert secrets.get("https://a.local") is None
    secrets.set("https://a.local", "token-a")
    secrets.set("https://b.local", "token-b")

    assert secrets.get("https://a.local") == "token-a"
    assert secrets.list() == ["https://a.local", "https://b.local"]

    secrets.remove("https://a.local")
    assert secrets.get("https://a.local") is None
    assert secrets.list() == ["https://b.local"]


def test_remove_unknown_is_noop(secrets):
    secrets.remove("https://missing.local")
    assert secrets.list() == []


def test_token_file_is_private(secrets):
    secrets.set("https://a.local", "token-a")
    mode = stat.S_IMODE(os.stat(secrets.path).st_mode)
    assert mode == 0o600


def test_tokens_persist_between_instances(tmp_path):
    SecretStore(tmp_path).set("https://a.local", "token-a")
    assert SecretStore(tmp_path).get("https://a.local") == "token-a"


def test_corrupted_file_raises_failure(secrets):
    secrets.directory.mkdir(parents=True, exist_ok=True)
    secrets.path.write_text("{broken: [")
    with pytest.raises(SecretStoreFailure):
        secrets.get("https://a.local")


def test_non_mapping_file_raises_failure(secrets):
    secrets.directory.mkdir(parents=True, exist_ok=True)
    secrets.path.write_text("- a\n- b\n")
    with pytest.raises(SecretStoreFailure):
        secrets.list()
