pytest_plugins = ["tests.fixtures.cluster_fixtures"]
