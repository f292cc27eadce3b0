from __future__ import annotations


class User:
    def __init__(
        self,
        Id: str = None,
        name: str = None,
        last_name: str = None,
        address_id: str = None,
        count: int = None,
        age: int = None,
    ):
        self.Id = Id
        self.name = name
        self.last_name = last_name
        self.address_id = address_id
        self.count = count
        self.age = age


class Company:
    def __init__(
        self,
        Id: str = None,
        external_id: str = None,
        name: str = None,
        phone: str = None,
        fax: str = None,
    ):
        self.Id = Id
        self.external_id = external_id
        self.name = name
        self.phone = phone
        self.fax = fax
