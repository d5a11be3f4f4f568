import pytest


BOOK_INPUT = {
    "title": "Kindred",
    "author": "Octavia E. Butler",
    "isbn": "978-0807083697",
    "genre": "Science Fiction",
    "totalCopies": 1,
}


def gql(client, query, variables=None, headers=None):
    response = client.post(
        "/graphql", json={"query": query, "variables": variables or {}}, headers=headers or {}
    )
    assert response.status_code == 200
    return response.json()


CREATE_BOOK = """
mutation CreateBook($input: CreateBookInput!) {
  createBook(input: $input) {
    success
    message
    data { id title availableCopies totalCopies }
  }
}
"""

BORROW_BOOK = """
mutation Borrow($input: CreateBorrowInput!) {
  borrowBook(input: $input) {
    success
    data { id status overdue dueDate user { id } book { id availableCopies } }
  }
}
"""

RETURN_BOOK = """
mutation Return($id: ID!) {
  returnBook(id: $id) {
    data { id status fine returnDate book { availableCopies } }
  }
}
"""


def create_book(client, headers, **overrides):
    result = gql(client, CREATE_BOOK, {"input": {**BOOK_INPUT, **overrides}}, headers)
    assert "errors" not in result
    return result["data"]["createBook"]["data"]


def test_register_and_login(client):
    """
    Test the account mutations.

    Verifies:
    - register returns a token and a Member account
    - login with the same credentials returns a token
    - me resolves the caller from the token
    """
    register = """
    mutation Register($input: CreateUserInput!) {
      register(input: $input) { success token data { id email role } }
    }
    """
    result = gql(
        client,
        register,
        {"input": {"name": "Grace", "email": "grace@example.com", "password": "cobol1959"}},
    )
    assert result["data"]["register"]["success"] is True
    assert result["data"]["register"]["data"]["role"] == "Member"

    login = """
    mutation Login($input: LoginInput!) {
      login(input: $input) { token data { email } }
    }
    """
    result = gql(
        client, login, {"input": {"email": "grace@example.com", "password": "cobol1959"}}
    )
    token = result["data"]["login"]["token"]
    assert token

    result = gql(
        client, "{ me { data { email role } } }", headers={"Authorization": f"Bearer {token}"}
    )
    assert result["data"]["me"]["data"]["email"] == "grace@example.com"


def test_invalid_register_input_is_bad_user_input(client):
    register = """
    mutation Register($input: CreateUserInput!) {
      register(input: $input) { success }
    }
    """
    result = gql(
        client,
        register,
        {"input": {"name": "Short", "email": "short@example.com", "password": "123"}},
    )
    assert result["data"] is None
    assert result["errors"][0]["extensions"]["code"] == "BAD_USER_INPUT"


def test_anonymous_caller_is_rejected_per_field(client):
    result = gql(client, "{ me { data { id } } }")
    assert result["errors"][0]["message"] == "Authentication required"
    assert result["errors"][0]["extensions"]["code"] == "UNAUTHENTICATED"

    result = gql(client, "{ users { total } }")
    assert result["errors"][0]["extensions"]["code"] == "UNAUTHENTICATED"


def test_member_cannot_create_book(client, member_headers):
    result = gql(client, CREATE_BOOK, {"input": BOOK_INPUT}, member_headers)
    assert result["errors"][0]["message"] == "Admin access required"
    assert result["errors"][0]["extensions"]["code"] == "FORBIDDEN"


def test_books_query_is_public(client, admin_headers):
    create_book(client, admin_headers)
    create_book(client, admin_headers, title="Dawn", isbn="978-0446603775", totalCopies=0)

    query = """
    query Books($search: BookSearchInput) {
      books(page: 1, limit: 10, search: $search) { total count data { title } }
    }
    """
    result = gql(client, query, {"search": {"author": "butler", "available": True}})
    assert result["data"]["books"]["total"] == 1
    assert result["data"]["books"]["data"][0]["title"] == "Kindred"

    result = gql(client, '{ searchBooks(query: "daw") { data { title } } }')
    assert [book["title"] for book in result["data"]["searchBooks"]["data"]] == ["Dawn"]


def test_borrow_and_return_mutations(client, admin_headers, member, member_headers):
    """
    Test borrowing and returning through GraphQL.

    Internal Working:
    1. Admin creates a single-copy book
    2. Member borrows it: record active, no copies left
    3. Admin's borrow of the same book fails with BOOK_UNAVAILABLE
    4. Member returns it and the copy is back
    5. Returning again fails with ALREADY_RETURNED
    """
    book = create_book(client, admin_headers)

    result = gql(client, BORROW_BOOK, {"input": {"bookId": book["id"]}}, member_headers)
    borrowed = result["data"]["borrowBook"]["data"]
    assert borrowed["status"] == "active"
    assert borrowed["overdue"] is False
    assert borrowed["user"]["id"] == str(member.id)
    assert borrowed["book"]["availableCopies"] == 0

    result = gql(client, BORROW_BOOK, {"input": {"bookId": book["id"]}}, admin_headers)
    assert result["errors"][0]["extensions"]["code"] == "BOOK_UNAVAILABLE"

    result = gql(client, RETURN_BOOK, {"id": borrowed["id"]}, member_headers)
    returned = result["data"]["returnBook"]["data"]
    assert returned["status"] == "returned"
    assert returned["fine"] == 0
    assert returned["returnDate"] is not None
    assert returned["book"]["availableCopies"] == 1

    result = gql(client, RETURN_BOOK, {"id": borrowed["id"]}, member_headers)
    assert result["errors"][0]["extensions"]["code"] == "ALREADY_RETURNED"


def test_my_borrows_and_renew(client, admin_headers, member_headers):
    book = create_book(client, admin_headers)
    result = gql(client, BORROW_BOOK, {"input": {"bookId": book["id"]}}, member_headers)
    record_id = result["data"]["borrowBook"]["data"]["id"]

    renew = """
    mutation Renew($id: ID!) { renewBook(id: $id) { data { renewalCount } } }
    """
    result = gql(client, renew, {"id": record_id}, member_headers)
    assert result["data"]["renewBook"]["data"]["renewalCount"] == 1

    result = gql(client, "{ myBorrows { total data { id renewalCount } } }", headers=member_headers)
    assert result["data"]["myBorrows"]["total"] == 1
    assert result["data"]["myBorrows"]["data"][0]["id"] == record_id


def test_update_borrow_requires_admin(client, admin_headers, member_headers):
    book = create_book(client, admin_headers)
    result = gql(client, BORROW_BOOK, {"input": {"bookId": book["id"]}}, member_headers)
    record_id = result["data"]["borrowBook"]["data"]["id"]

    update = """
    mutation Update($id: ID!, $input: UpdateBorrowInput!) {
      updateBorrow(id: $id, input: $input) { data { status fine notes } }
    }
    """
    variables = {"id": record_id, "input": {"status": "returned", "fine": 2.5, "notes": "late"}}

    result = gql(client, update, variables, member_headers)
    assert result["errors"][0]["extensions"]["code"] == "FORBIDDEN"

    result = gql(client, update, variables, admin_headers)
    assert result["data"]["updateBorrow"]["data"] == {
        "status": "returned",
        "fine": 2.5,
        "notes": "late",
    }


def test_genre_stats_and_library_stats(client, admin_headers, member_headers):
    book = create_book(client, admin_headers, totalCopies=2)
    create_book(client, admin_headers, title="Dawn", isbn="978-0446603775", genre="Horror")
    gql(client, BORROW_BOOK, {"input": {"bookId": book["id"]}}, member_headers)

    query = """
    {
      genreStats {
        count
        data { genre totalBooks totalBorrows activeBorrows availabilityRate popularityScore }
      }
      libraryStats { totalBooks totalBorrows activeBorrows overdueBorrows totalFines }
    }
    """
    result = gql(client, query, headers=admin_headers)
    assert "errors" not in result

    stats = result["data"]["genreStats"]
    assert stats["count"] == 2
    top = stats["data"][0]
    assert top["genre"] == "Science Fiction"
    assert top["totalBorrows"] == 1
    assert top["activeBorrows"] == 1
    assert top["availabilityRate"] == 50.0
    assert top["popularityScore"] == 1.0

    library = result["data"]["libraryStats"]
    assert library == {
        "totalBooks": 2,
        "totalBorrows": 1,
        "activeBorrows": 1,
        "overdueBorrows": 0,
        "totalFines": 0.0,
    }


def test_analytics_queries_are_admin_only(client, member_headers):
    result = gql(client, "{ genreStats { count } }", headers=member_headers)
    assert result["errors"][0]["extensions"]["code"] == "FORBIDDEN"


def test_oversized_ranking_limit_is_bad_user_input(client, admin_headers):
    result = gql(client, "{ mostBorrowedBooks(limit: 500) { count } }", headers=admin_headers)
    assert result["errors"][0]["extensions"]["code"] == "BAD_USER_INPUT"

    result = gql(client, "{ mostActiveMembers(limit: 500) { count } }", headers=admin_headers)
    assert result["errors"][0]["extensions"]["code"] == "BAD_USER_INPUT"


@pytest.mark.parametrize(
    "field",
    [
        "mostBorrowedBooks(limit: 5) { count data { borrowCount popularityScore book { title } } }",
        "mostActiveMembers { count data { totalBorrows activityScore user { email } } }",
        "bookAvailabilityReport(filter: {genre: \"Science Fiction\"}) "
        "{ count summary { totalCopies totalBorrowed } data { status availabilityPercentage } }",
    ],
)
def test_ranking_reports(client, admin_headers, member_headers, field):
    book = create_book(client, admin_headers)
    gql(client, BORROW_BOOK, {"input": {"bookId": book["id"]}}, member_headers)

    result = gql(client, "{ %s }" % field, headers=admin_headers)
    assert "errors" not in result
    report = next(iter(result["data"].values()))
    assert report["count"] == 1
