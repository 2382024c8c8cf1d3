# SPDX-License-Identifier: MIT

"""GitHub REST and GraphQL calls used to submit and maintain sync PRs."""

import json
import logging
from dataclasses import dataclass

import regex
import requests

from upstreamsync.errors import GitHubError, PRAlreadyExistsError

logger = logging.getLogger(__name__)

API_URL = 'https://api.github.com'
GRAPHQL_URL = 'https://api.github.com/graphql'

# Seconds to wait for GitHub to respond
TIMEOUT = 30

# Default attempts on transport failures
DEFAULT_RETRIES = 3

# Message GitHub sends in a 422 response when the PR exists already
PR_EXISTS_MESSAGE = 'A pull request already exists for '

PR_QUERY = '''query ($repoOwner: String!, $repoName: String!, $headRefName: String!, $baseRefName: String!) {
  repository(owner: $repoOwner, name: $repoName) {
    pullRequests(states: OPEN, headRefName: $headRefName, baseRefName: $baseRefName, first: 5) {
      nodes {
        title
        id
        number
        author {
          login
        }
        headRepositoryOwner {
          login
        }
        baseRepository {
          owner {
            login
          }
          nameWithOwner
        }
      }
      pageInfo {
        hasNextPage
      }
    }
  }
}'''

APPROVE_MUTATION = '''mutation ($nodeID: ID!) {
  addPullRequestReview(input: {pullRequestId: $nodeID, event: APPROVE, body: "Thanks! Auto-approving."}) {
    clientMutationId
  }
}'''

AUTO_MERGE_MUTATION = '''mutation ($nodeID: ID!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $nodeID, mergeMethod: MERGE}) {
    clientMutationId
  }
}'''


@dataclass
class PullRequest:
    """A PR on GitHub, identified by its number and GraphQL node ID."""

    number: int
    node_id: str
    html_url: str = ''
    title: str = ''


class Remote:
    """A parsed repository URL, e.g. `https://github.com/microsoft/go` or
    `git@github.com:microsoft/go`.  The last two path segments are the
    owner and the repository name.
    """

    def __init__(self, url):
        self.url = url
        self.parts = [p for p in regex.split(r'[/:]', url) if p]
        if len(self.parts) < 3:
            raise GitHubError(
                "Failed to find 3 parts of remote URL '{}', found {}.  Expected a string separated "
                "with '/' or ':', like https://github.com/microsoft/go or git@github.com:microsoft/go".format(
                    url, self.parts))

    @property
    def owner(self):
        return self.parts[-2]

    @property
    def repo(self):
        return self.parts[-1]

    @property
    def owner_repo(self):
        return self.owner + '/' + self.repo


def parse_remote_url(url):
    r = Remote(url)
    logger.info('From repo URL %s, detected %s for the PR target.', url, r.owner_repo)
    return r




def _json(response):
    """Returns the JSON object of a response.

    :raises GitHubError: If the body is not a JSON object
    """
    try:
        data = response.json()
    except ValueError as e:
        raise GitHubError('Unable to parse the GitHub response as JSON: {}'.format(e),
                          status=response.status_code, response_text=response.text) from e
    if not isinstance(data, dict):
        raise GitHubError('Expected a JSON object in the GitHub response, got {}'.format(type(data).__name__),
                          status=response.status_code, response_text=response.text)
    return data


def _require(data, key, what):
    value = data.get(key)
    if value is None:
        raise GitHubError('{} is missing {!r}: {}'.format(what, key, data))
    return value


def _login(node, key):
    return (node.get(key) or {}).get('login')


class GitHubClient:
    """Sends the GitHub requests of one sync run.

    :param retries: Attempts per request on transport failures
    :param timeout: Seconds to wait for GitHub to respond
    :param session: The requests.Session to send with, a new one by default
    """

    def __init__(self, retries=DEFAULT_RETRIES, timeout=TIMEOUT, session=None):
        self.retries = retries
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/vnd.github.v3+json'})

    def _send(self, method, url, auth, payload):
        """Sends a JSON request and returns the response.  Transport failures
        are retried; HTTP error statuses are left to the caller.
        """
        logger.info('Sending request: %s %s', method, url)
        for attempt in range(self.retries):
            try:
                response = self.session.request(method, url, json=payload,
                                                auth=auth.http_auth() if auth else None, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                logger.warning('Request attempt #%d/%d failed: %s', attempt + 1, self.retries, e)
                continue
            else:
                break
        else:
            raise GitHubError('Exhausted attempts sending {} {}'.format(method, url))
        for k, v in response.headers.items():
            if k.lower().startswith('x-ratelimit-'):
                logger.info('%s : %s', k, v)
        logger.info('---- Full response (%d):\n%s\n----', response.status_code, response.text)
        return response

    def post_pr(self, owner_repo, request, auth):
        """Creates a PR.

        :param owner_repo: The target repository, `owner/name`
        :param request: The payload from PRRefSet.create_github_pr()
        :param auth: The auther of the submitting user
        :returns: The created PullRequest
        :raises PRAlreadyExistsError: If GitHub says the PR exists already
        """
        logger.info('Submitting payload: %s', json.dumps(request, indent=1))
        response = self._send('POST', '{}/repos/{}/pulls'.format(API_URL, owner_repo), auth, request)
        if response.status_code == 201:
            data = _json(response)
            return PullRequest(number=_require(data, 'number', 'Created PR'),
                               node_id=_require(data, 'node_id', 'Created PR'),
                               html_url=data.get('html_url') or '', title=data.get('title') or '')
        if response.status_code == 422:
            errors = _json(response).get('errors') or []
            for e in errors:
                message = (e.get('message') or '') if isinstance(e, dict) else ''
                if message.startswith(PR_EXISTS_MESSAGE):
                    raise PRAlreadyExistsError('PR already exists: response message {!r}'.format(message),
                                               status=422, response_text=response.text)
            raise GitHubError('Response code 422 may indicate PR already exists, but the error message is '
                              'not recognized: {}'.format(errors), status=422, response_text=response.text)
        raise GitHubError('Unexpected HTTP status code: {}'.format(response.status_code),
                          status=response.status_code, response_text=response.text)

    def query_graphql(self, auth, query, variables=None):
        """Runs a GraphQL query or mutation.

        :param auth: The auther to run the query as
        :param query: The GraphQL document
        :param variables: Query variables, optional
        :returns: The `data` part of the response
        """
        payload = {'query': query}
        if variables:
            payload['variables'] = variables
        response = self._send('POST', GRAPHQL_URL, auth, payload)
        if response.status_code < 200 or response.status_code > 299:
            raise GitHubError('Request unsuccessful, HTTP status {}'.format(response.status_code),
                              status=response.status_code, response_text=response.text)
        data = _json(response)
        if data.get('errors'):
            raise GitHubError('GraphQL errors: {}'.format(data['errors']),
                              status=response.status_code, response_text=response.text)
        return data.get('data') or {}

    def find_existing_pr(self, request, head, target, head_branch, submitter, auth):
        """Looks for the open PR matching the request.

        The search result is validated rather than trusted: the PR must be in
        the target repository, submitted by `submitter` from the `head` owner.

        :param request: The PR creation payload
        :param head: Remote storing the PR branch
        :param target: Remote the PR is submitted to
        :param head_branch: The PR head branch name
        :param submitter: Login of the user submitting PRs
        :param auth: The auther to search as
        :returns: The PullRequest, or None if no PR matches
        :raises GitHubError: If more than one PR matches or the match is unexpected
        """
        data = self.query_graphql(auth, PR_QUERY, {
            'repoOwner': target.owner,
            'repoName': target.repo,
            'headRefName': head_branch,
            'baseRefName': request['base'],
        })
        prs = (data.get('repository') or {}).get('pullRequests') or {}
        # The search does not filter by repository, so do it here
        nodes = [n for n in prs.get('nodes') or []
                 if n and (n.get('baseRepository') or {}).get('nameWithOwner') == target.owner_repo]
        logger.debug('PR search result: %s', nodes)
        if len(nodes) > 1:
            raise GitHubError('Expected 0/1 PR search result, found {}'.format(len(nodes)))
        if (prs.get('pageInfo') or {}).get('hasNextPage'):
            raise GitHubError("Expected 0/1 PR search result, but the results say there's another page")
        if not nodes:
            return None
        n = nodes[0]
        author = _login(n, 'author')
        if author != submitter:
            raise GitHubError('Pull request author is {}, expected {}'.format(author, submitter))
        head_owner = _login(n, 'headRepositoryOwner')
        if head_owner != head.owner:
            raise GitHubError('Pull request head owner is {}, expected {}'.format(head_owner, head.owner))
        base_owner = _login(n['baseRepository'], 'owner')
        if base_owner != target.owner:
            raise GitHubError('Pull request base owner is {}, expected {}'.format(base_owner, target.owner))
        return PullRequest(number=_require(n, 'number', 'PR search result'),
                           node_id=_require(n, 'id', 'PR search result'), title=n.get('title') or '')

    def approve_pr(self, node_id, auth):
        """Adds an approving review as the user behind `auth`."""
        self.query_graphql(auth, APPROVE_MUTATION, {'nodeID': node_id})

    def enable_auto_merge(self, node_id, auth):
        self.query_graphql(auth, AUTO_MERGE_MUTATION, {'nodeID': node_id})
