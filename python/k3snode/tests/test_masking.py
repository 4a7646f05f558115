import logging

from k3snode.utils.masking import MASK, SecretMasker, get_logger, mask_secret, redact


def test_redact_longest_first():
    masker = SecretMasker()
    masker.add("abc")
    masker.add("abcdef")
    assert masker.redact("x abcdef y abc") == f"x {MASK} y {MASK}"


def test_blank_values_are_ignored():
    masker = SecretMasker()
    masker.add("")
    masker.add("   ")
    assert masker.redact("   text   ") == "   text   "


def test_logged_secrets_are_masked(caplog):
    logger = get_logger("k3snode.tests.masking")
    mask_secret("K10token::server:secret\n")
    with caplog.at_level(logging.INFO, logger="k3snode.tests.masking"):
        logger.info("joining with %s", "K10token::server:secret")
    assert "K10token" not in caplog.text
    assert MASK in caplog.text


def test_module_redact_uses_shared_masker():
    mask_secret("hunter2")
    assert redact("password=hunter2") == f"password={MASK}"
