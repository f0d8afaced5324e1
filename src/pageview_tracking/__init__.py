"""
Self-hosted pageview and performance tracking.

Usage:
    from pageview_tracking import setup_tracking

    tracking = setup_tracking(
        sqlite_path="tracking.db",
        timezone="Europe/Berlin",
        ip_ranges_file="bot_ip_ranges.json",
    )
    await tracking.ensure_schema()

    # Receive beacons
    app.include_router(tracking.collect_router)

    # In templates: {{ tracking.tracking_script() }}

    # Periodically (cron, scheduler)
    await tracking.run_stats()
"""

from .config import BlacklistConfig, TrackingConfig, STORE_D1
from .context import TrackingContext, load_context
from .core.client import D1Client, SQLiteClient, TrackingClient
from .ingest import BeaconIngestor, IngestResult
from .rebuild import rebuild_daily_aggregates
from .routes import create_collect_router
from .stats import DailyStatsJob, StatsRunSummary

__version__ = "0.1.0"
__all__ = [
    "setup_tracking", "Tracking", "TrackingConfig", "BlacklistConfig",
    "BeaconIngestor", "IngestResult", "DailyStatsJob", "StatsRunSummary",
    "rebuild_daily_aggregates", "create_client",
]


def create_client(config: TrackingConfig) -> TrackingClient:
    """Store client for the configured backend."""
    if config.store == STORE_D1:
        return D1Client(
            d1_database_id=config.d1_database_id,
            cf_account_id=config.cf_account_id,
            cf_api_token=config.cf_api_token,
        )
    return SQLiteClient(config.sqlite_path)


class Tracking:
    """Main tracking interface for a site."""

    def __init__(
        self,
        config: TrackingConfig,
        client: TrackingClient | None = None,
        context: TrackingContext | None = None,
        collect_path: str = "/collect",
    ):
        self.config = config
        self.collect_path = collect_path
        self.client = client or create_client(config)
        self.context = context or load_context(config)
        self.ingestor = BeaconIngestor(self.client, self.context, config)
        self.collect_router = create_collect_router(self.ingestor)
        self.stats_job = DailyStatsJob(self.client)

    async def ensure_schema(self) -> None:
        await self.client.ensure_schema()

    async def run_stats(self) -> StatsRunSummary:
        return await self.stats_job.run()

    async def rebuild(self) -> int:
        return await rebuild_daily_aggregates(
            self.client,
            self.context.ranges,
            category=self.config.category,
            count_bots=self.config.count_bots_on_beacon,
        )

    async def close(self) -> None:
        await self.client.close()

    def tracking_script(self, daily: bool = False) -> str:
        """Generate the tracking script HTML for templates.

        Features:
        - Pageview beacon on first real visibility (skips prerender)
        - Metrics beacon after load with Navigation Timing v2 values
          (legacy performance.timing fallback)
        - Shared random view id so the server can pair both beacons
        - pagehide safety net for pages closed before becoming visible

        With ``daily=True`` only an anonymous pageview is sent to the
        daily-only endpoint, and no per-view data is stored.
        """
        if daily:
            return self._daily_script()
        return f'''<script>
(function(){{
  var d=document,w=window,n=navigator,p=performance;
  var url="{self.collect_path}";
  var sent=false;

  function makeId(){{
    if(w.crypto&&typeof crypto.randomUUID==="function")return crypto.randomUUID();
    return "xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx".replace(/[xy]/g,function(c){{
      var r=Math.random()*16|0;return (c==="x"?r:(r&3)|8).toString(16);
    }});
  }}
  var viewId=makeId();

  function send(data){{
    var body=JSON.stringify(data);
    if(n.sendBeacon)n.sendBeacon(url,new Blob([body],{{type:"application/json"}}));
    else fetch(url,{{method:"POST",headers:{{"Content-Type":"application/json"}},body:body,keepalive:true}}).catch(function(){{}});
  }}

  function pageview(){{
    if(sent)return;
    sent=true;
    send({{
      type:"pageview",view_id:viewId,url:location.href,
      referrer:d.referrer||"",language:n.language||"",
      timezone:Intl.DateTimeFormat().resolvedOptions().timeZone||"",
      viewport_width:w.innerWidth,viewport_height:w.innerHeight,
      ts_pageview_ms:Date.now()
    }});
  }}

  if(d.visibilityState==="visible"&&d.prerendering!==true)pageview();
  else d.addEventListener("visibilitychange",function(){{
    if(d.visibilityState==="visible")pageview();
  }},{{once:true}});

  w.addEventListener("load",function(){{
    setTimeout(function(){{
      var nav=p.getEntriesByType&&p.getEntriesByType("navigation")[0],t=p.timing,m=null;
      if(nav)m={{ttfb_ms:nav.responseStart-nav.startTime,dom_content_loaded_ms:nav.domContentLoadedEventEnd-nav.startTime,load_event_end_ms:nav.loadEventEnd-nav.startTime}};
      else if(t&&t.loadEventEnd)m={{ttfb_ms:t.responseStart-t.navigationStart,dom_content_loaded_ms:t.domContentLoadedEventEnd-t.navigationStart,load_event_end_ms:t.loadEventEnd-t.navigationStart}};
      if(!m)return;
      m.type="metrics";m.view_id=viewId;m.url=location.href;m.ts_metrics_ms=Date.now();
      send(m);
    }},0);
  }},{{once:true}});

  w.addEventListener("pagehide",pageview,{{once:true}});
}})();
</script>'''

    def _daily_script(self) -> str:
        return f'''<script>
(function(){{
  var d=document,w=window,n=navigator;
  var url="{self.collect_path}/daily";
  var sent=false;

  function pageview(){{
    if(sent)return;
    sent=true;
    var body=JSON.stringify({{
      url:location.href,referrer:d.referrer||"",language:n.language||"",
      timezone:Intl.DateTimeFormat().resolvedOptions().timeZone||"",
      viewport_width:w.innerWidth,viewport_height:w.innerHeight,
      ts_pageview_ms:Date.now()
    }});
    if(n.sendBeacon)n.sendBeacon(url,new Blob([body],{{type:"application/json"}}));
    else fetch(url,{{method:"POST",headers:{{"Content-Type":"application/json"}},body:body,keepalive:true}}).catch(function(){{}});
  }}

  if(d.visibilityState==="visible"&&d.prerendering!==true)pageview();
  else d.addEventListener("visibilitychange",function(){{
    if(d.visibilityState==="visible")pageview();
  }},{{once:true}});

  w.addEventListener("pagehide",pageview,{{once:true}});
}})();
</script>'''


def setup_tracking(config: TrackingConfig | None = None, **kwargs) -> Tracking:
    """
    Set up tracking for a site.

    Args:
        config: A ready TrackingConfig. If omitted, one is built from kwargs.
        **kwargs: TrackingConfig fields (store, sqlite_path, d1_database_id,
                  cf_account_id, cf_api_token, timezone, category, ...)

    Returns:
        Tracking instance with collect_router, tracking_script() and the
        batch jobs (run_stats(), rebuild())
    """
    return Tracking(config or TrackingConfig(**kwargs))
