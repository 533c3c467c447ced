"""Settings loading."""

from clinic_migrate.config import MigrationSettings


class TestMigrationSettings:

    def test_defaults(self):
        settings = MigrationSettings.from_env({})

        assert settings.database_url == "sqlite:///./data/migrations.db"
        assert settings.max_retries == 3
        assert settings.backoff_factor == 2.0
        assert settings.agent_url is None
        assert settings.batch_size == 100

    def test_from_env(self):
        settings = MigrationSettings.from_env({
            "CLINIC_MIGRATE_DATABASE_URL": "sqlite:///tmp/x.db",
            "CLINIC_MIGRATE_BATCH_SIZE": "25",
            "CLINIC_MIGRATE_CONNECTOR_TIMEOUT": "7.5",
            "CLINIC_MIGRATE_MAX_RETRIES": "5",
            "CLINIC_MIGRATE_BACKOFF_FACTOR": "0.25",
            "CLINIC_MIGRATE_MASKING_SECRET": "s3cret",
            "CLINIC_MIGRATE_ENCRYPTION_KEY": "ab" * 32,
            "CLINIC_MIGRATE_AGENT_URL": "",
            "UNRELATED": "ignored",
        })

        assert settings.database_url == "sqlite:///tmp/x.db"
        assert settings.batch_size == 25
        assert settings.connector_timeout == 7.5
        assert settings.retry_config == {"max_retries": 5, "backoff_factor": 0.25}
        assert settings.masking_secret == "s3cret"
        assert settings.encryption_key == "ab" * 32
        assert settings.agent_url is None

    def test_to_dict_omits_secrets(self):
        data = MigrationSettings(masking_secret="s3cret", encryption_key="ab" * 32).to_dict()

        assert "masking_secret" not in data
        assert "encryption_key" not in data
        assert MigrationSettings.from_dict(data).batch_size == 100
