from enum import Enum


class EndpointType(str, Enum):
    QUERY = "query"
    STORED_PROCEDURE = "stored_procedure"
    FUNCTION = "function"
    TABLE = "table"

    def __str__(self):
        return self.value


class EndpointStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUSPENDED = "suspended"

    def __str__(self):
        return self.value


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"

    def __str__(self):
        return self.value
