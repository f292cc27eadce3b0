from setuptools import setup, find_packages

setup(
    name="ravendb-subscriptions",
    packages=find_packages(include=["ravendb_subscriptions", "ravendb_subscriptions.*"], exclude=["*.tests.*", "*.tests"]),
    version="5.2.5",
    description="RavenDB data subscriptions worker and session deferred commands for Python",
    author="RavenDB",
    author_email="support@ravendb.net",
    url="https://github.com/ravendb/ravendb-python-client",
    license="MIT",
    keywords=[
        "ravendb",
        "nosql",
        "database",
        "subscriptions",
    ],
    python_requires="~=3.7",
    install_requires=[
        "requests >= 2.27.1",
        "ijson ~= 3.2.3",
        "inflect >= 5.4.0",
    ],
    extras_require={"test": ["pytest"]},
    zip_safe=False,
)
