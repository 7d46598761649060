import os
import tempfile
import unittest

from foundry_gateway.config import GatewayConfig


class GatewayConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = GatewayConfig()
        config.validate()
        self.assertEqual(config.port, 3000)
        self.assertEqual(config.unload_timeout_s, 60.0)
        self.assertEqual(config.load_timeout_s, 120.0)
        self.assertEqual(config.progress_flush_s, 2.0)
        self.assertEqual(config.download_max_retries, 3)

    def test_env_overrides_are_coerced(self):
        config = GatewayConfig.from_env(
            {
                "GATEWAY_PORT": "8080",
                "GATEWAY_LOAD_TIMEOUT": "30.5",
                "GATEWAY_MIRROR_OUTPUT": "off",
                "FOUNDRY_CLI": "/opt/foundry",
                "UNRELATED": "x",
            }
        )
        self.assertEqual(config.port, 8080)
        self.assertEqual(config.load_timeout_s, 30.5)
        self.assertFalse(config.mirror_output)
        self.assertEqual(config.cli_path, "/opt/foundry")

    def test_bad_values_rejected(self):
        with self.assertRaises(ValueError):
            GatewayConfig.from_env({"GATEWAY_PORT": "abc"})
        with self.assertRaises(ValueError):
            GatewayConfig.from_env({"GATEWAY_UNLOAD_ON_STARTUP": "maybe"})
        with self.assertRaises(ValueError):
            GatewayConfig().with_overrides(no_such_key=1)

    def test_validate(self):
        bad = [
            {"port": 0},
            {"poll_interval_s": 0},
            {"load_timeout_s": -1},
            {"download_max_retries": -1},
            {"chat_max_tokens": 0},
            {"log_level": "loud"},
            {"cli_path": " "},
        ]
        for overrides in bad:
            with self.subTest(**overrides):
                with self.assertRaises(ValueError):
                    GatewayConfig().with_overrides(**overrides).validate()

    def test_yaml_then_env(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "gateway.yaml")
            with open(path, "w") as f:
                f.write("gateway:\n  port: 4000\n  poll_interval_s: 0.5\n  unload_on_startup: false\n")

            config = GatewayConfig.load(path, environ={"GATEWAY_PORT": "5000"})

        self.assertEqual(config.port, 5000)
        self.assertEqual(config.poll_interval_s, 0.5)
        self.assertFalse(config.unload_on_startup)

    def test_yaml_must_be_mapping(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "gateway.yaml")
            with open(path, "w") as f:
                f.write("- just\n- a list\n")
            with self.assertRaises(ValueError):
                GatewayConfig.from_yaml(path)


if __name__ == "__main__":
    unittest.main()
