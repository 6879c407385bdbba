import asyncio, warnings, copy, time, json, logging, contextvars
from collections.abc import Iterable, Mapping
from typing import Any, Callable, List, Optional

__version__ = "1.0.0"

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_ACTION = "default"

# Set inside each parallel batch-flow branch; visits there run a copy of the node
_isolated_visits = contextvars.ContextVar("nodeflow_isolated_visits", default=False)

class FlowError(Exception):
    """Base class for errors raised by nodeflow itself rather than by node code."""

class AsyncUsageError(FlowError, RuntimeError):
    """A node was invoked through the wrong entry point.

    Raised when ``run()`` is called on an async node or flow, or ``run_async()``
    on a synchronous one. It is raised before any phase runs and is never
    retried, so it cannot be confused with a failure inside ``exec``.
    """

def _get_node_name(node) -> str:
    return getattr(node, 'name', None) or node.__class__.__name__

def _action_token(action) -> str:
    """Canonical edge label for a post() result: None/"" -> "default", non-strings -> JSON text."""
    if action is None or (isinstance(action, str) and not action): return DEFAULT_ACTION
    if isinstance(action, str): return action
    return json.dumps(action, default=str)

def _merge_params(base, override) -> dict:
    # Shallow, one level; only dict overrides customise anything
    merged = dict(base) if isinstance(base, Mapping) else {}
    if isinstance(override, Mapping): merged.update(override)
    return merged

def _as_items(items) -> List[Any]:
    """Normalise a prep() result into a batch.

    Lists, tuples and other iterables yield their elements in order. None,
    strings, mappings and scalars are a batch of one.
    """
    if isinstance(items, (str, bytes, bytearray, Mapping)) or not isinstance(items, Iterable): return [items]
    return list(items)

# Batch runners: each applies a single-item executor to every item and returns results in input order.

def _map_sequential(fn: Callable, items: List[Any]) -> List[Any]:
    return [fn(i) for i in items]

async def _map_sequential_async(fn: Callable, items: List[Any]) -> List[Any]:
    return [await fn(i) for i in items]

async def _map_parallel_async(fn: Callable, items: List[Any]) -> List[Any]:
    # Every branch is joined before the first failure (in input order) is re-raised
    async def settle(i):
        try: return True, await fn(i)
        except Exception as exc: return False, exc
    outcomes = await asyncio.gather(*(settle(i) for i in items))
    for ok, value in outcomes:
        if not ok: raise value
    return [value for _, value in outcomes]

class BaseNode:
    is_async = False
    def __init__(self): self.params,self.successors,self.name={},{},None
    def set_params(self,params): self.params=params
    def get_params(self): return self.params
    def next(self,node,action=DEFAULT_ACTION):
        if action in self.successors: warnings.warn(f"Overwriting successor for action '{action}'")
        self.successors[action]=node; return node
    def prep(self,shared): pass
    def exec(self,prep_res): pass
    def post(self,shared,prep_res,exec_res): pass
    def _exec(self,prep_res): return self.exec(prep_res)
    def _run(self,shared): p=self.prep(shared); e=self._exec(p); return self.post(shared,p,e)
    def run(self,shared):
        if self.successors: warnings.warn("Node won't run successors. Use Flow.")
        return self._run(shared)
    async def run_async(self,shared): raise AsyncUsageError(f"'{_get_node_name(self)}' is synchronous. Use run.")
    def __rshift__(self,other): return self.next(other)
    def __sub__(self,action):
        if isinstance(action,str): return _ConditionalTransition(self,action)
        raise TypeError("Action must be a string")

class _ConditionalTransition:
    def __init__(self,src,action): self.src,self.action=src,action
    def __rshift__(self,tgt): return self.src.next(tgt,self.action)

class Node(BaseNode):
    def __init__(self,max_retries=1,wait=0,max_wait=None):
        super().__init__()
        if max_retries<1: raise ValueError("max_retries must be at least 1")
        self.max_retries,self.wait,self.max_wait,self.cur_retry=max_retries,wait,max_wait,0
    def exec_fallback(self,prep_res,exc): raise exc
    def _get_wait_time(self,retry_count):
        if self.wait<=0: return 0
        w=self.wait*(2**retry_count)
        return min(w,self.max_wait) if self.max_wait is not None else w
    def _log_retry(self,exc,wait):
        logger.debug("%s: attempt %d/%d failed (%s: %s), retrying in %.3fs",
                     _get_node_name(self),self.cur_retry+1,self.max_retries,type(exc).__name__,exc,wait)
    def _log_fallback(self,exc,recovered):
        if recovered: logger.debug("%s: recovered by fallback after %d attempt(s)",_get_node_name(self),self.max_retries)
        else: logger.warning("%s: failed after %d attempt(s): %s: %s",_get_node_name(self),self.max_retries,type(exc).__name__,exc)
    def _fallback(self,prep_res,exc):
        try: res=self.exec_fallback(prep_res,exc)
        except Exception as e: self._log_fallback(e,False); raise
        self._log_fallback(exc,True); return res
    def _exec(self,prep_res):
        self.cur_retry=0
        for i in range(self.max_retries):
            self.cur_retry=i
            try: return self.exec(prep_res)
            except AsyncUsageError: raise
            except Exception as e:
                if i==self.max_retries-1: return self._fallback(prep_res,e)
                w=self._get_wait_time(i)
                self._log_retry(e,w)
                if w>0: time.sleep(w)

class BatchNode(Node):
    _map=staticmethod(_map_sequential)
    def _exec(self,items): return self._map(super(BatchNode,self)._exec,_as_items(items))

class Flow(BaseNode):
    def __init__(self,start=None): super().__init__(); self.start_node=start
    def start(self,start): self.start_node=start; return start
    def get_next_node(self,curr,action):
        token=_action_token(action)
        nxt=curr.successors.get(token)
        if nxt is None and token!=DEFAULT_ACTION: nxt=curr.successors.get(DEFAULT_ACTION)
        if nxt is None and curr.successors: warnings.warn(f"Flow ends: '{token}' not found in {list(curr.successors)}")
        return nxt
    def _prepare(self,node,params):
        if _isolated_visits.get(): node=copy.copy(node)
        node.set_params(_merge_params(self.params,params)); return node
    def _advance(self,curr,action):
        nxt=self.get_next_node(curr,action)
        if nxt is not None:
            logger.debug("%s: %s --[%s]--> %s",_get_node_name(self),_get_node_name(curr),_action_token(action),_get_node_name(nxt))
        return nxt
    def _orch(self,shared,params=None):
        curr,last_action=self.start_node,None
        logger.debug("%s: traversal started",_get_node_name(self))
        while curr is not None:
            last_action=self._prepare(curr,params)._run(shared)
            curr=self._advance(curr,last_action)
        logger.debug("%s: traversal ended with action %r",_get_node_name(self),last_action)
        return last_action
    def _run(self,shared): p=self.prep(shared); o=self._orch(shared,p); return self.post(shared,p,o)
    def post(self,shared,prep_res,exec_res): return exec_res

class BatchFlow(Flow):
    _map=staticmethod(_map_sequential)
    def _run(self,shared):
        p=self.prep(shared); pr=[] if p is None else _as_items(p)
        logger.debug("%s: running %d parameter set(s)",_get_node_name(self),len(pr))
        self._map(lambda bp: self._orch(shared,bp),pr)
        return self.post(shared,p,None)

class AsyncNode(Node):
    is_async = True
    async def prep_async(self,shared): return self.prep(shared)
    async def exec_async(self,prep_res): return self.exec(prep_res)
    async def exec_fallback_async(self,prep_res,exc): return self.exec_fallback(prep_res,exc)
    async def post_async(self,shared,prep_res,exec_res): return self.post(shared,prep_res,exec_res)
    async def _fallback_async(self,prep_res,exc):
        try: res=await self.exec_fallback_async(prep_res,exc)
        except Exception as e: self._log_fallback(e,False); raise
        self._log_fallback(exc,True); return res
    async def _exec(self,prep_res):
        self.cur_retry=0
        for i in range(self.max_retries):
            self.cur_retry=i
            try: return await self.exec_async(prep_res)
            except AsyncUsageError: raise
            except Exception as e:
                if i==self.max_retries-1: return await self._fallback_async(prep_res,e)
                w=self._get_wait_time(i)
                self._log_retry(e,w)
                if w>0: await asyncio.sleep(w)
    async def run_async(self,shared):
        if self.successors: warnings.warn("Node won't run successors. Use AsyncFlow.")
        return await self._run_async(shared)
    async def _run_async(self,shared):
        p=await self.prep_async(shared)
        e=await self._exec(p)
        return await self.post_async(shared,p,e)
    def _run(self,shared): raise AsyncUsageError(f"'{_get_node_name(self)}' is asynchronous. Use run_async.")
    def run(self,shared): return self._run(shared)

class AsyncBatchNode(AsyncNode):
    _map_async=staticmethod(_map_sequential_async)
    async def _exec(self,items): return await self._map_async(super(AsyncBatchNode,self)._exec,_as_items(items))

class AsyncParallelBatchNode(AsyncBatchNode):
    """Runs the retry-wrapped exec for every item concurrently.

    All items share this instance, so ``cur_retry`` reflects whichever item
    last started an attempt. Keep per-item attempt state in the item itself.
    """
    _map_async=staticmethod(_map_parallel_async)

class AsyncFlow(Flow):
    is_async = True
    async def prep_async(self,shared): return self.prep(shared)
    async def post_async(self,shared,prep_res,exec_res): return self.post(shared,prep_res,exec_res)
    async def _orch_async(self,shared,params=None):
        curr,last_action=self.start_node,None
        logger.debug("%s: traversal started",_get_node_name(self))
        while curr is not None:
            node=self._prepare(curr,params)
            # Mixed graphs: suspending nodes are awaited, synchronous ones are called inline
            last_action=await node._run_async(shared) if node.is_async else node._run(shared)
            curr=self._advance(curr,last_action)
        logger.debug("%s: traversal ended with action %r",_get_node_name(self),last_action)
        return last_action
    async def run_async(self,shared):
        if self.successors: warnings.warn("Node won't run successors. Use AsyncFlow.")
        return await self._run_async(shared)
    async def _run_async(self,shared):
        p=await self.prep_async(shared)
        o=await self._orch_async(shared,p)
        return await self.post_async(shared,p,o)
    def _run(self,shared): raise AsyncUsageError(f"'{_get_node_name(self)}' is asynchronous. Use run_async.")
    def run(self,shared): return self._run(shared)

class AsyncBatchFlow(AsyncFlow):
    _map_async=staticmethod(_map_sequential_async)
    async def _run_async(self,shared):
        p=await self.prep_async(shared); pr=[] if p is None else _as_items(p)
        logger.debug("%s: running %d parameter set(s)",_get_node_name(self),len(pr))
        await self._map_async(lambda bp: self._orch_async(shared,bp),pr)
        return await self.post_async(shared,p,None)

class AsyncParallelBatchFlow(AsyncBatchFlow):
    _map_async=staticmethod(_map_parallel_async)
    async def _orch_async(self,shared,params=None):
        # Each branch is its own gather task, so the flag stays local to it and to nested flows
        _isolated_visits.set(True)
        return await super()._orch_async(shared,params)
